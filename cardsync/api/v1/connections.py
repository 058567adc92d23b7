"""Connection endpoints: link, sync, reconnect, health"""

import logging
import uuid
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

from cardsync.api.dependencies import get_aggregator_client, get_cipher, get_request_id
from cardsync.api.v1.schemas import (
    HealthResponse,
    LinkRequest,
    LinkResponse,
    LinkTokenResponse,
    ReconnectRequest,
    ReconnectResponse,
    StageSchema,
    SyncResponse,
)
from cardsync.domain.exceptions import AggregatorError, ConnectionNotFoundError
from cardsync.domain.models import SyncResult
from cardsync.infrastructure.clients.aggregator import AggregatorClient
from cardsync.infrastructure.database.repositories import ConnectionRepository
from cardsync.infrastructure.database.session import get_db
from cardsync.infrastructure.security.encryption import CredentialCipher, CredentialError
from cardsync.services.connections import ConnectionService
from cardsync.services.health import check_connection
from cardsync.services.reconnection import ReconnectionValidator
from cardsync.services.sync import SyncService

router = APIRouter()

logger = logging.getLogger(__name__)


def parse_connection_id(connection_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(connection_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid connection ID format")


def to_sync_response(result: SyncResult) -> SyncResponse:
    return SyncResponse(
        connection_id=str(result.connection_id),
        status=result.status.value,
        cards_synced=result.cards_synced,
        transactions_upserted=result.transactions_upserted,
        transactions_skipped=result.transactions_skipped,
        transactions_flagged=result.transactions_flagged,
        preserved_older=result.preserved_older,
        fetch_state=result.fetch_state.value if result.fetch_state else None,
        errors=result.errors,
    )


@router.post("/connections", response_model=LinkResponse, status_code=201)
async def link_connection(
    request_body: LinkRequest,
    request: Request,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    cipher: CredentialCipher = Depends(get_cipher),
):
    """
    Exchange a Link public token, store the connection, and run the first
    (recent scope) sync so the user sees data immediately.
    """
    request_id = get_request_id(request)
    try:
        connection, access_token = await ConnectionService(db, client, cipher).link(
            request_body.user_id, request_body.public_token
        )
    except AggregatorError as e:
        db.rollback()
        logger.error(f"Token exchange failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=502, detail="Could not link institution")

    result = await SyncService(db, client, cipher).sync(connection, access_token, scope="recent", force=True)
    return LinkResponse(
        connection_id=str(connection.id),
        institution_name=connection.institution_name,
        sync=to_sync_response(result),
    )


@router.post("/connections/{connection_id}/sync", response_model=SyncResponse)
async def sync_connection(
    connection_id: str,
    request: Request,
    scope: str = Query("full", pattern="^(recent|full)$"),
    force: bool = False,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    cipher: CredentialCipher = Depends(get_cipher),
):
    """
    Sync one connection. Aggregator trouble is reported in the body status
    (degraded, needs_reconnection, failed, skipped), not as an HTTP error.
    """
    request_id = get_request_id(request)
    try:
        result = await SyncService(db, client, cipher).sync_connection(
            parse_connection_id(connection_id), scope=scope, force=force
        )
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except CredentialError as e:
        logger.error(f"Credential unreadable: {e}", extra={"request_id": request_id, "connection_id": connection_id})
        raise HTTPException(status_code=500, detail="Stored credential could not be read")
    return to_sync_response(result)


@router.post("/connections/{connection_id}/reconnect", response_model=ReconnectResponse)
async def reconnect_connection(
    connection_id: str,
    request_body: ReconnectRequest,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    cipher: CredentialCipher = Depends(get_cipher),
):
    """Refresh the credential with an update-mode public token and validate the resync"""
    try:
        report = await ReconnectionValidator(db, client, cipher).reconnect(
            parse_connection_id(connection_id), request_body.public_token
        )
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")

    check = report.completeness
    return ReconnectResponse(
        connection_id=str(report.connection_id),
        succeeded=report.succeeded,
        final_stage=report.final_stage.value,
        stages=[StageSchema(stage=s.stage.value, ok=s.ok, detail=s.detail) for s in report.stages],
        account_count=check.account_count if check else 0,
        accounts_with_open_date=check.accounts_with_open_date if check else 0,
        accounts_with_balance_or_activity=check.accounts_with_balance_or_activity if check else 0,
    )


@router.get("/connections/{connection_id}/health", response_model=HealthResponse)
async def connection_health(
    connection_id: str,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    cipher: CredentialCipher = Depends(get_cipher),
):
    try:
        connection = ConnectionRepository(db).get(parse_connection_id(connection_id))
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")

    try:
        access_token = cipher.decrypt(connection.encrypted_access_token)
    except CredentialError:
        raise HTTPException(status_code=500, detail="Stored credential could not be read")

    health = await check_connection(client, connection.id, access_token)
    return HealthResponse(
        connection_id=str(health.connection_id),
        status=health.status,
        connectivity=health.connectivity,
        error_code=health.error_code,
        recommended_action=health.recommended_action,
    )


@router.post("/connections/{connection_id}/link-token", response_model=LinkTokenResponse)
async def update_link_token(
    connection_id: str,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    cipher: CredentialCipher = Depends(get_cipher),
):
    """Link token in update mode, handed to the client to start reconnection"""
    try:
        token = await ConnectionService(db, client, cipher).update_link_token(parse_connection_id(connection_id))
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except AggregatorError as e:
        logger.error(f"Link token request failed: {e}", extra={"connection_id": connection_id})
        raise HTTPException(status_code=502, detail="Could not create link token")
    return LinkTokenResponse(link_token=token)


@router.delete("/connections/{connection_id}", status_code=204)
async def remove_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    client: AggregatorClient = Depends(get_aggregator_client),
    cipher: CredentialCipher = Depends(get_cipher),
):
    try:
        await ConnectionService(db, client, cipher).disconnect(parse_connection_id(connection_id))
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except AggregatorError as e:
        logger.error(f"Item removal failed: {e}", extra={"connection_id": connection_id})
        raise HTTPException(status_code=502, detail="Could not remove connection")
    return Response(status_code=204)
