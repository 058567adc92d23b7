"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class AggregatorError(DomainException):
    """Aggregator API returned an error or is unavailable"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        error_type: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_type = error_type


class RequestFailedError(AggregatorError):
    """Aggregator call failed for a reason retrying will not fix"""

    pass


class RateLimitedError(AggregatorError):
    """A single throttled response; retried by the executor"""

    pass


class TransientAggregatorError(AggregatorError):
    """Connection reset or timeout; retried with a linear backoff"""

    pass


class RateLimitExceededError(AggregatorError):
    """Rate limiting persisted through every retry attempt"""

    def __init__(self, message: str, attempts: int, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class ReconnectionRequiredError(AggregatorError):
    """Access credential is invalid or expired; the user must relink"""

    pass


class InvalidTransactionDataError(DomainException):
    """Transaction data is malformed or invalid"""

    pass


class ConnectionNotFoundError(DomainException):
    """No connection exists for the given identifier"""

    pass


class CardNotFoundError(DomainException):
    """No card exists for the given identifier"""

    pass


class SyncLeaseHeldError(DomainException):
    """Another sync of the same connection holds an unexpired lease"""

    def __init__(self, connection_id, expires_at):
        super().__init__(f"Sync already running for connection {connection_id} (lease until {expires_at})")
        self.connection_id = connection_id
        self.expires_at = expires_at


class AccumulationViolationError(DomainException):
    """Something tried to delete stored transactions during a sync"""

    pass
