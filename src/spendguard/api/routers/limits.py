"""Spend limit endpoints."""

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from spendguard.api.dependencies import get_services, require_account_id
from spendguard.ledger.repository import LedgerRepository
from spendguard.services import Services

router = APIRouter(prefix="/api/v1/limits", tags=["Limits"])


class DailySummaryResponse(BaseModel):
    """Today's spend against the daily cap."""

    model_config = ConfigDict(populate_by_name=True)

    spent: Decimal
    pending: Decimal
    remaining: Decimal
    limit: Decimal
    percent_used: float = Field(alias="percentUsed")


@router.get("/daily", response_model=DailySummaryResponse, response_model_by_alias=True)
async def daily_summary(
    account_id: int = Depends(require_account_id),
    services: Services = Depends(get_services),
) -> DailySummaryResponse:
    """Settled and pending spend for the current UTC day."""
    async with services.session_factory() as session:
        summary = await services.aggregator.daily_summary(LedgerRepository(session), account_id)

    return DailySummaryResponse(
        spent=summary.spent,
        pending=summary.pending,
        remaining=summary.remaining,
        limit=summary.limit,
        percent_used=round(summary.percent_used, 2),
    )
