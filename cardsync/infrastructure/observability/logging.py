"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from cardsync.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_sync_outcome(
    connection_id: str,
    institution_name: str | None,
    status: str,
    transactions_upserted: int,
    preserved_older: int,
    duration_ms: float,
) -> None:
    """Log structured sync outcome for analysis"""
    logging.getLogger("cardsync.sync").info(
        "Sync completed",
        extra={
            "connection_id": connection_id,
            "institution": institution_name,
            "step": "sync_complete",
            "sync_outcome": status,
            "transactions_upserted": transactions_upserted,
            "preserved_older": preserved_older,
            "duration_ms": duration_ms,
        },
    )


def log_extraction(field: str, card_ref: str, source: str, value: Any, attempted: list[str]) -> None:
    """Record which cascade strategy produced a field, for institution-specific debugging"""
    logging.getLogger("cardsync.extraction").info(
        f"{field} resolved from {source}",
        extra={
            "step": "extraction",
            "field": field,
            "account_id": card_ref,
            "source": source,
            "value": None if value is None else str(value),
            "attempted": attempted,
        },
    )
