"""Fraud alert endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from spendguard.api.dependencies import get_services, require_account_id
from spendguard.ledger.repository import LedgerRepository
from spendguard.services import Services

router = APIRouter(prefix="/api/v1/fraud", tags=["Fraud"])


class FraudAlertResponse(BaseModel):
    """One fraud alert."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: int
    transaction_id: Optional[int] = Field(default=None, alias="transactionId")
    card_id: Optional[int] = Field(default=None, alias="cardId")
    wallet_id: Optional[int] = Field(default=None, alias="walletId")
    channel: str
    amount_usd: Decimal = Field(alias="amountUsd")
    counterparty: Optional[str] = None
    risk_score: int = Field(alias="riskScore")
    level: str
    reasons: list[str]
    blocked: bool
    created_at: datetime = Field(alias="createdAt")


@router.get("/alerts", response_model=list[FraudAlertResponse], response_model_by_alias=True)
async def list_fraud_alerts(
    limit: int = Query(50, ge=1, le=200),
    account_id: int = Depends(require_account_id),
    services: Services = Depends(get_services),
) -> list[FraudAlertResponse]:
    """Most recent fraud alerts for the account."""
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        alerts = await repo.get_account_fraud_alerts(account_id, limit=limit)

    return [FraudAlertResponse.model_validate(alert) for alert in alerts]
