"""Linking new institutions and refreshing expired ones"""

import logging
import uuid
from typing import Tuple

from sqlalchemy.orm import Session

from cardsync.infrastructure.clients.aggregator import AggregatorClient
from cardsync.infrastructure.database.models import Connection
from cardsync.infrastructure.database.repositories import ConnectionRepository
from cardsync.infrastructure.security.encryption import CredentialCipher

logger = logging.getLogger(__name__)


class ConnectionService:
    def __init__(self, db: Session, client: AggregatorClient, cipher: CredentialCipher | None = None):
        self.db = db
        self.client = client
        self.cipher = cipher or CredentialCipher()
        self.connections = ConnectionRepository(db)

    async def link(self, user_id: str, public_token: str) -> Tuple[Connection, str]:
        """
        Exchange a public token and store the connection with its credential
        encrypted. Returns the connection and the plaintext access token so the
        caller can run the first sync without a decrypt round trip.

        Relinking an item that is already stored replaces its credential.
        """
        access_token, item_id = await self.client.exchange_token(public_token)
        institution_id, institution_name = await self.client.get_institution(access_token)
        encrypted = self.cipher.encrypt(access_token)

        connection = self.connections.get_by_item_id(item_id)
        if connection is None:
            connection = self.connections.create(user_id, item_id, encrypted, institution_id, institution_name)
            logger.info(
                f"Linked {institution_name}",
                extra={"connection_id": str(connection.id), "institution_id": institution_id},
            )
        else:
            self.connections.replace_credential(connection, item_id, encrypted)
            self.connections.mark_error(connection, "active", None, None)
            logger.info(f"Relinked existing item for {institution_name}", extra={"connection_id": str(connection.id)})
        self.db.commit()
        return connection, access_token

    async def update_link_token(self, connection_id: uuid.UUID) -> str:
        """Link token in update mode for a connection whose credential expired"""
        connection = self.connections.get(connection_id)
        access_token = self.cipher.decrypt(connection.encrypted_access_token)
        return await self.client.create_update_link_token(connection.user_id, access_token)

    async def disconnect(self, connection_id: uuid.UUID) -> Connection:
        """
        Revoke the item at the aggregator and mark the connection removed.
        Cards and transactions stay in the store.
        """
        connection = self.connections.get(connection_id)
        access_token = self.cipher.decrypt(connection.encrypted_access_token)
        await self.client.remove_item(access_token)
        self.connections.mark_error(connection, "removed", None, None)
        self.db.commit()
        logger.info("Connection removed", extra={"connection_id": str(connection.id)})
        return connection
