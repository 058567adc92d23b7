"""Pytest fixtures for testing"""

import uuid
import pytest
from datetime import date, timedelta
from typing import Any, Dict, Generator, List
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from cardsync.api.dependencies import get_aggregator_client, get_cipher
from cardsync.api.main import create_app
from cardsync.domain.exceptions import ReconnectionRequiredError
from cardsync.infrastructure.database.models import Base, Connection
from cardsync.infrastructure.database.session import get_db
from cardsync.infrastructure.security.encryption import CredentialCipher

TODAY = date.today()

# In-memory database shared across threads so the TestClient sees the same data
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite needs its own transaction handling turned off for SAVEPOINT to work
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(Fernet.generate_key())


async def no_sleep(seconds: float) -> None:
    return None


class FakeAggregator:
    """
    Scripted in-memory aggregator.

    Each endpoint returns its configured payload, or raises the exception
    queued for it. Calls are recorded for assertions.
    """

    def __init__(self):
        self.accounts: List[Dict[str, Any]] = []
        self.liabilities: List[Dict[str, Any]] = []
        self.balances: List[Dict[str, Any]] | None = None
        self.transactions: List[Dict[str, Any]] = []
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.item_id = "item-1"
        self.institution = ("ins_1", "Chase")

    def _maybe_raise(self, endpoint: str) -> None:
        error = self.errors.get(endpoint)
        if error is not None:
            raise error

    async def exchange_token(self, public_token: str):
        self.calls.append(("exchange_token", public_token))
        self._maybe_raise("exchange_token")
        return f"access-{public_token}", self.item_id

    async def get_institution(self, access_token: str):
        self.calls.append(("get_institution",))
        return self.institution

    async def get_accounts(self, access_token: str):
        self.calls.append(("get_accounts",))
        self._maybe_raise("accounts")
        return {"accounts": self.accounts}

    async def get_liabilities(self, access_token: str):
        self.calls.append(("get_liabilities",))
        self._maybe_raise("liabilities")
        return {"accounts": self.accounts, "liabilities": {"credit": self.liabilities}}

    async def get_balances(self, access_token: str, min_updated_time=None):
        self.calls.append(("get_balances", min_updated_time))
        self._maybe_raise("balances")
        return {"accounts": self.accounts if self.balances is None else self.balances}

    async def get_transactions(self, access_token: str, start_date: date, end_date: date):
        self.calls.append(("get_transactions", start_date, end_date))
        self._maybe_raise("transactions")
        return [
            t for t in self.transactions
            if start_date <= date.fromisoformat(t["date"]) <= end_date
        ]

    async def create_update_link_token(self, user_id: str, access_token: str):
        self.calls.append(("create_update_link_token", user_id, access_token))
        return "link-update-token"

    async def remove_item(self, access_token: str):
        self.calls.append(("remove_item", access_token))

    def transaction_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] == "get_transactions"]


def credit_account(account_id: str = "acc-1", name: str = "Freedom", current: float = 250.0, **extra) -> Dict[str, Any]:
    account = {
        "account_id": account_id,
        "name": name,
        "official_name": f"{name} Card",
        "mask": "1234",
        "type": "credit",
        "subtype": "credit card",
        "balances": {"current": current, "available": 4750.0, "limit": None, "iso_currency_code": "USD"},
    }
    account.update(extra)
    return account


def make_transaction(txn_id: str, txn_date: date, amount: Any = 25.0, account_id: str = "acc-1", **extra) -> Dict[str, Any]:
    txn = {
        "transaction_id": txn_id,
        "account_id": account_id,
        "amount": amount,
        "date": txn_date.isoformat(),
        "name": "Coffee Shop",
        "merchant_name": "Coffee Shop",
        "pending": False,
        "category": ["Food and Drink", "Coffee"],
        "iso_currency_code": "USD",
    }
    txn.update(extra)
    return txn


@pytest.fixture
def fake_aggregator() -> FakeAggregator:
    aggregator = FakeAggregator()
    aggregator.accounts = [credit_account()]
    aggregator.liabilities = [
        {
            "account_id": "acc-1",
            "last_statement_balance": 410.5,
            "last_statement_issue_date": (TODAY - timedelta(days=20)).isoformat(),
            "next_payment_due_date": (TODAY + timedelta(days=5)).isoformat(),
            "minimum_payment_amount": 35.0,
            "aprs": [
                {"apr_type": "purchase_apr", "apr_percentage": 22.9, "balance_subject_to_apr": 410.5},
            ],
        }
    ]
    aggregator.transactions = [
        make_transaction(f"txn-{i}", TODAY - timedelta(days=i * 3)) for i in range(10)
    ]
    return aggregator


@pytest.fixture
def connection_factory(db: Session, cipher: CredentialCipher):
    """Create stored connections with an encrypted credential"""

    def create(institution_name: str = "Chase", access_token: str = "access-token", **fields) -> Connection:
        connection = Connection(
            id=uuid.uuid4(),
            user_id=fields.pop("user_id", "user-1"),
            item_id=fields.pop("item_id", f"item-{uuid.uuid4().hex[:8]}"),
            encrypted_access_token=cipher.encrypt(access_token),
            institution_name=institution_name,
            status=fields.pop("status", "active"),
            **fields,
        )
        db.add(connection)
        db.commit()
        return connection

    return create


@pytest.fixture
def client(db: Session, fake_aggregator: FakeAggregator, cipher: CredentialCipher) -> TestClient:
    """Create FastAPI test client with test database and a fake aggregator"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_aggregator_client] = lambda: fake_aggregator
    app.dependency_overrides[get_cipher] = lambda: cipher
    return TestClient(app)


@pytest.fixture
def expired_credential() -> ReconnectionRequiredError:
    return ReconnectionRequiredError(
        "the login details of this item have changed",
        status_code=400,
        error_code="ITEM_LOGIN_REQUIRED",
        error_type="ITEM_ERROR",
    )
