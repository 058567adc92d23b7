"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, Field
from datetime import date
from typing import Dict, List, Optional


class LinkRequest(BaseModel):
    """Request body for POST /v1/connections"""

    user_id: str = Field(..., min_length=1, description="User identifier")
    public_token: str = Field(..., min_length=1, description="Public token from the Link flow")


class ReconnectRequest(BaseModel):
    """Request body for POST /v1/connections/{id}/reconnect"""

    public_token: str = Field(..., min_length=1, description="Public token from update-mode Link")


class SyncResponse(BaseModel):
    """Per-connection sync outcome"""

    connection_id: str
    status: str
    cards_synced: int
    transactions_upserted: int
    transactions_skipped: int
    transactions_flagged: int
    preserved_older: int
    fetch_state: Optional[str] = None
    errors: List[str] = []


class LinkTokenResponse(BaseModel):
    """Update-mode link token for an expired connection"""

    link_token: str


class LinkResponse(BaseModel):
    """Response for POST /v1/connections"""

    connection_id: str
    institution_name: Optional[str] = None
    sync: SyncResponse


class StageSchema(BaseModel):
    stage: str
    ok: bool
    detail: str = ""


class ReconnectResponse(BaseModel):
    """Response for POST /v1/connections/{id}/reconnect"""

    connection_id: str
    succeeded: bool
    final_stage: str
    stages: List[StageSchema]
    account_count: int = 0
    accounts_with_open_date: int = 0
    accounts_with_balance_or_activity: int = 0


class HealthResponse(BaseModel):
    """Response for GET /v1/connections/{id}/health"""

    connection_id: str
    status: str
    connectivity: Dict[str, bool]
    error_code: Optional[str] = None
    recommended_action: str = ""


class BillingCycleSchema(BaseModel):
    start_date: date
    end_date: date
    total_spend: float
    transaction_count: int
    statement_balance: Optional[float] = None
    minimum_payment: Optional[float] = None
    due_date: Optional[date] = None
    payment_status: str


class BillingCyclesResponse(BaseModel):
    """Response for GET /v1/cards/{card_id}/billing-cycles"""

    card_id: str
    scope: str
    cycles: List[BillingCycleSchema]


class ManualLimitRequest(BaseModel):
    """Request body for PUT /v1/cards/{card_id}/manual-limit"""

    manual_credit_limit: float = Field(..., gt=0, allow_inf_nan=False, description="User-supplied credit limit")


class CardLimitResponse(BaseModel):
    """Effective credit limit of a card and any manual override"""

    card_id: str
    credit_limit: Optional[float] = None
    credit_limit_source: Optional[str] = None
    manual_limit_enabled: bool
    manual_credit_limit: Optional[float] = None
