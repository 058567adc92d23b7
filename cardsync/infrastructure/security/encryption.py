"""Access-token encryption at rest"""

from cryptography.fernet import Fernet, InvalidToken

from cardsync.config import settings
from cardsync.domain.exceptions import DomainException


class CredentialError(DomainException):
    """Stored credential cannot be decrypted with the configured key"""

    pass


class CredentialCipher:
    """Fernet wrapper for aggregator access tokens"""

    def __init__(self, key: str | bytes | None = None):
        key = key or settings.credential_encryption_key
        if not key:
            raise CredentialError("credential_encryption_key is not configured")
        self._fernet = Fernet(key)

    def encrypt(self, access_token: str) -> str:
        return self._fernet.encrypt(access_token.encode("utf-8")).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        try:
            return self._fernet.decrypt(encrypted.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise CredentialError("Stored access token could not be decrypted") from e
