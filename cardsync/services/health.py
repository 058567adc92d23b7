"""Connection health check"""

import logging
from datetime import date, datetime, timedelta, timezone

from cardsync.config import settings
from cardsync.domain.exceptions import AggregatorError, ReconnectionRequiredError
from cardsync.domain.models import ConnectionHealth
from cardsync.infrastructure.clients.aggregator import AggregatorClient

logger = logging.getLogger(__name__)

CHECK_TRANSACTION_DAYS = 7


async def check_connection(
    client: AggregatorClient,
    connection_id,
    access_token: str,
    today: date | None = None,
) -> ConnectionHealth:
    """
    Exercise each aggregator endpoint once and report which respond.

    Only the accounts call decides the status; balances, transactions, and
    liabilities are checked for the connectivity map once accounts works.
    """
    today = today or date.today()
    connectivity = {"accounts": False, "balances": False, "transactions": False, "liabilities": False}

    try:
        await client.get_accounts(access_token)
        connectivity["accounts"] = True
    except ReconnectionRequiredError as e:
        logger.warning(f"Health check: credential rejected: {e}", extra={"connection_id": str(connection_id)})
        return ConnectionHealth(
            connection_id=connection_id,
            status="requires_auth",
            connectivity=connectivity,
            error_code=e.error_code,
            recommended_action="Reconnect the account through update mode",
        )
    except AggregatorError as e:
        logger.error(f"Health check: accounts unavailable: {e}", extra={"connection_id": str(connection_id)})
        return ConnectionHealth(
            connection_id=connection_id,
            status="error",
            connectivity=connectivity,
            error_code=e.error_code,
            recommended_action="Retry later; the institution is not responding",
        )

    checks = (
        (
            "balances",
            lambda: client.get_balances(
                access_token,
                datetime.now(timezone.utc) - timedelta(days=settings.balance_max_staleness_days),
            ),
        ),
        (
            "transactions",
            lambda: client.get_transactions(access_token, today - timedelta(days=CHECK_TRANSACTION_DAYS), today),
        ),
        ("liabilities", lambda: client.get_liabilities(access_token)),
    )
    for name, check in checks:
        try:
            await check()
            connectivity[name] = True
        except AggregatorError as e:
            logger.info(f"Health check: {name} unavailable: {e}", extra={"connection_id": str(connection_id)})

    return ConnectionHealth(connection_id=connection_id, status="healthy", connectivity=connectivity)
