"""Aggregator API HTTP client for accounts, liabilities, balances, and transactions"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Tuple

import httpx

from cardsync.config import settings
from cardsync.domain.exceptions import (
    AggregatorError,
    RateLimitedError,
    ReconnectionRequiredError,
    RequestFailedError,
    TransientAggregatorError,
)
from cardsync.infrastructure.clients.retry import RetryExecutor
from cardsync.infrastructure.observability.metrics import aggregator_latency_histogram

logger = logging.getLogger(__name__)

# Error codes that mean the stored credential is no longer usable
RECONNECT_ERROR_CODES = frozenset({
    "ITEM_LOGIN_REQUIRED",
    "INVALID_ACCESS_TOKEN",
    "ITEM_LOCKED",
    "ITEM_NOT_FOUND",
    "ACCESS_NOT_GRANTED",
    "PENDING_EXPIRATION",
    "USER_PERMISSION_REVOKED",
})

RATE_LIMIT_ERROR_TYPES = frozenset({"RATE_LIMIT_EXCEEDED"})

TRANSIENT_STATUS_CODES = frozenset({502, 503, 504})


class AggregatorClient:
    """Client for the bank-data aggregation API"""

    def __init__(
        self,
        base_url: str | None = None,
        client_id: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        retry: RetryExecutor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.aggregator_base_url).rstrip("/")
        self.client_id = client_id or settings.aggregator_client_id
        self.secret = secret or settings.aggregator_secret
        self.timeout = timeout or settings.http_timeout_seconds
        self.retry = retry or RetryExecutor()
        self._transport = transport

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Single POST with error classification.

        Raises:
            RateLimitedError: 429 or a rate-limit error type
            TransientAggregatorError: timeout, connection failure, or gateway error
            ReconnectionRequiredError: the access credential needs relinking
            RequestFailedError: anything else, including malformed JSON
        """
        body = {"client_id": self.client_id, "secret": self.secret, **payload}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                with aggregator_latency_histogram.labels(endpoint=path).time():
                    response = await client.post(f"{self.base_url}{path}", json=body)
            except httpx.TimeoutException as e:
                raise TransientAggregatorError(f"Aggregator timeout after {self.timeout}s on {path}") from e
            except httpx.TransportError as e:
                raise TransientAggregatorError(f"Aggregator connection error on {path}: {e}") from e

        if response.status_code >= 400:
            raise self._classify_error(path, response)

        try:
            return response.json()
        except ValueError as e:
            raise RequestFailedError(f"Invalid JSON from aggregator on {path}: {e}") from e

    @staticmethod
    def _classify_error(path: str, response: httpx.Response) -> Exception:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        error_code = data.get("error_code")
        error_type = data.get("error_type")
        message = data.get("error_message") or f"Aggregator error {response.status_code} on {path}"
        kwargs = {"status_code": response.status_code, "error_code": error_code, "error_type": error_type}

        if response.status_code == 429 or error_type in RATE_LIMIT_ERROR_TYPES or (
            error_code and error_code.endswith("RATE_LIMIT")
        ):
            return RateLimitedError(message, **kwargs)
        if error_code in RECONNECT_ERROR_CODES:
            return ReconnectionRequiredError(message, **kwargs)
        if response.status_code in TRANSIENT_STATUS_CODES:
            return TransientAggregatorError(message, **kwargs)
        return RequestFailedError(message, **kwargs)

    async def _call(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.retry.run(lambda: self._post(path, payload), description=path)

    async def exchange_token(self, public_token: str) -> Tuple[str, str]:
        """Exchange a Link public token for (access_token, item_id)"""
        data = await self._call("/item/public_token/exchange", {"public_token": public_token})
        try:
            return data["access_token"], data["item_id"]
        except KeyError as e:
            raise RequestFailedError(f"Token exchange response missing {e}") from e

    async def get_institution(self, access_token: str) -> Tuple[str | None, str]:
        """
        Resolve (institution_id, institution_name) for an item.

        The name lookup is best-effort; failures fall back to "Unknown Institution".
        """
        item = (await self._call("/item/get", {"access_token": access_token})).get("item") or {}
        institution_id = item.get("institution_id")
        if not institution_id:
            return None, "Unknown Institution"
        try:
            data = await self._call(
                "/institutions/get_by_id",
                {"institution_id": institution_id, "country_codes": ["US"]},
            )
            return institution_id, (data.get("institution") or {}).get("name") or "Unknown Institution"
        except ReconnectionRequiredError:
            raise
        except AggregatorError as e:
            logger.warning(f"Could not fetch institution name: {e}", extra={"institution_id": institution_id})
            return institution_id, "Unknown Institution"

    async def get_accounts(self, access_token: str) -> Dict[str, Any]:
        return await self._call("/accounts/get", {"access_token": access_token})

    async def get_liabilities(self, access_token: str) -> Dict[str, Any]:
        return await self._call("/liabilities/get", {"access_token": access_token})

    async def get_balances(self, access_token: str, min_updated_time: datetime | None = None) -> Dict[str, Any]:
        """Real-time balances; some institutions reject the call without min_last_updated_datetime"""
        payload: Dict[str, Any] = {"access_token": access_token}
        if min_updated_time is not None:
            payload["options"] = {"min_last_updated_datetime": min_updated_time.isoformat()}
        return await self._call("/accounts/balance/get", payload)

    async def get_transactions(self, access_token: str, start_date: date, end_date: date) -> List[Dict[str, Any]]:
        """Fetch every page of transactions in [start_date, end_date]"""
        page_size = settings.transactions_page_size
        transactions: List[Dict[str, Any]] = []
        while True:
            data = await self._call(
                "/transactions/get",
                {
                    "access_token": access_token,
                    "start_date": start_date.isoformat(),
                    "end_date": end_date.isoformat(),
                    "options": {"count": page_size, "offset": len(transactions)},
                },
            )
            page = data.get("transactions") or []
            transactions.extend(page)
            total = data.get("total_transactions", len(transactions))
            if not page or len(transactions) >= total:
                return transactions

    async def create_link_token(self, user_id: str) -> str:
        payload: Dict[str, Any] = {
            "user": {"client_user_id": user_id},
            "client_name": "Card Tracker",
            "products": ["liabilities", "transactions"],
            "country_codes": ["US"],
            "language": "en",
            "account_filters": {"credit": {"account_subtypes": ["credit card"]}},
        }
        if settings.aggregator_webhook_url:
            payload["webhook"] = settings.aggregator_webhook_url
        return (await self._call("/link/token/create", payload))["link_token"]

    async def create_update_link_token(self, user_id: str, access_token: str) -> str:
        """Link token in update mode, used to refresh an expired credential"""
        payload = {
            "user": {"client_user_id": user_id},
            "client_name": "Card Tracker",
            "country_codes": ["US"],
            "language": "en",
            "access_token": access_token,
        }
        return (await self._call("/link/token/create", payload))["link_token"]

    async def remove_item(self, access_token: str) -> None:
        await self._call("/item/remove", {"access_token": access_token})
