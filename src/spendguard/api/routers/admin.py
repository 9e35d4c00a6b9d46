"""Admin API endpoints (token-protected).

Provisioning of accounts, wallets and cards, plus the explicit card
actions that are allowed to change status, limits and counters.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError

from spendguard.api.dependencies import get_services, require_admin_token
from spendguard.chains.registry import normalize_chain
from spendguard.ledger.models import Card, CardStatus
from spendguard.ledger.repository import LedgerRepository
from spendguard.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])


class AccountCreate(BaseModel):
    external_id: str = Field(min_length=1, max_length=64)
    telegram_id: Optional[int] = None
    timezone: str = "UTC"


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    telegram_id: Optional[int] = None
    timezone: str


class WalletCreate(BaseModel):
    chain: str
    address: str = Field(min_length=1, max_length=128)
    balance_usd: Optional[Decimal] = Field(default=None, ge=0)


class WalletBalanceUpdate(BaseModel):
    balance_usd: Decimal = Field(ge=0)


class WalletResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    chain: str
    address: str
    balance_usd: Optional[Decimal] = None
    balance_updated_at: Optional[datetime] = None


class CardControls(BaseModel):
    """Limit and restriction changes; omitted fields are left unchanged."""

    spending_limit: Optional[Decimal] = Field(default=None, ge=0)
    daily_limit: Optional[Decimal] = Field(default=None, ge=0)
    monthly_limit: Optional[Decimal] = Field(default=None, ge=0)
    allowed_mcc: Optional[list[str]] = None
    blocked_mcc: Optional[list[str]] = None
    allowed_countries: Optional[list[str]] = None
    blocked_countries: Optional[list[str]] = None
    cashback_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)


class CardCreate(CardControls):
    wallet_id: Optional[int] = None
    is_disposable: bool = False


class CardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    wallet_id: Optional[int] = None
    status: CardStatus
    is_disposable: bool
    total_spent: Decimal
    monthly_spent: Decimal
    spending_limit: Optional[Decimal] = None
    daily_limit: Optional[Decimal] = None
    monthly_limit: Optional[Decimal] = None
    allowed_mcc: list[str]
    blocked_mcc: list[str]
    allowed_countries: list[str]
    blocked_countries: list[str]
    cashback_rate: Optional[Decimal] = None
    last_used_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


def _card_response(card: Card) -> CardResponse:
    return CardResponse.model_validate(card)


def _normalize_lists(values: dict) -> dict:
    for name in ("allowed_countries", "blocked_countries"):
        if values.get(name) is not None:
            values[name] = [c.strip().upper() for c in values[name]]
    for name in ("allowed_mcc", "blocked_mcc"):
        if values.get(name) is not None:
            values[name] = [m.strip() for m in values[name]]
    return values


@router.post("/accounts", response_model=AccountResponse, status_code=201)
async def create_account(
    data: AccountCreate,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> AccountResponse:
    """Register an account resolved by the identity service."""
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        if await repo.get_account_by_external_id(data.external_id):
            raise HTTPException(status_code=409, detail="Account already exists")
        account = await repo.create_account(data.external_id, data.telegram_id, data.timezone)
        await session.commit()
        return AccountResponse.model_validate(account)


@router.post("/accounts/{account_id}/wallets", response_model=WalletResponse, status_code=201)
async def create_wallet(
    account_id: int,
    data: WalletCreate,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> WalletResponse:
    """Link an on-chain address to an account."""
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        if await repo.get_account(account_id) is None:
            raise HTTPException(status_code=404, detail="Account not found")
        try:
            wallet = await repo.create_wallet(
                account_id, normalize_chain(data.chain), data.address, data.balance_usd
            )
            if data.balance_usd is not None:
                wallet.balance_updated_at = services.clock()
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise HTTPException(status_code=409, detail="Wallet already linked")
        return WalletResponse.model_validate(wallet)


@router.post("/wallets/{wallet_id}/balance", response_model=WalletResponse)
async def update_wallet_balance(
    wallet_id: int,
    data: WalletBalanceUpdate,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> WalletResponse:
    """Refresh the cached wallet balance."""
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        wallet = await repo.update_wallet_balance(wallet_id, data.balance_usd, services.clock())
        if wallet is None:
            raise HTTPException(status_code=404, detail="Wallet not found")
        await session.commit()
        return WalletResponse.model_validate(wallet)


@router.post("/accounts/{account_id}/cards", response_model=CardResponse, status_code=201)
async def create_card(
    account_id: int,
    data: CardCreate,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> CardResponse:
    """Issue a card."""
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        if await repo.get_account(account_id) is None:
            raise HTTPException(status_code=404, detail="Account not found")
        if data.wallet_id is not None:
            wallet = await repo.get_wallet(data.wallet_id)
            if wallet is None or wallet.account_id != account_id:
                raise HTTPException(status_code=404, detail="Wallet not found")

        fields = _normalize_lists(data.model_dump())
        for name in ("allowed_mcc", "blocked_mcc", "allowed_countries", "blocked_countries"):
            if fields[name] is None:
                fields[name] = []
        card = await repo.create_card(account_id, **fields)
        await session.commit()
        card = await repo.get_card(card.id)
        return _card_response(card)


@router.get("/cards/{card_id}", response_model=CardResponse)
async def get_card(
    card_id: int,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> CardResponse:
    """Card state including counters."""
    async with services.session_factory() as session:
        card = await LedgerRepository(session).get_card(card_id)
        if card is None:
            raise HTTPException(status_code=404, detail="Card not found")
        return _card_response(card)


@router.post("/cards/{card_id}/controls", response_model=CardResponse)
async def update_card_controls(
    card_id: int,
    data: CardControls,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> CardResponse:
    """Change limits or restriction lists."""
    changes = _normalize_lists(data.model_dump(exclude_unset=True))
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        try:
            card = await repo.update_card_controls(card_id, **changes)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        await session.commit()
        logger.info(f"Card {card_id} controls updated: {sorted(changes)}")
        return _card_response(card)


async def _set_status(services: Services, card_id: int, status: CardStatus) -> CardResponse:
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        if await repo.get_card(card_id) is None:
            raise HTTPException(status_code=404, detail="Card not found")
        try:
            card = await repo.set_card_status(card_id, status, services.clock())
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        await repo.add_audit_log(
            action=f"card_{status.value}",
            resource="card",
            resource_id=str(card_id),
            status=status.value,
            now=services.clock(),
            account_id=card.account_id,
        )
        await session.commit()
        logger.info(f"Card {card_id} set to {status.value}")
        return _card_response(card)


@router.post("/cards/{card_id}/freeze", response_model=CardResponse)
async def freeze_card(
    card_id: int,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> CardResponse:
    return await _set_status(services, card_id, CardStatus.FROZEN)


@router.post("/cards/{card_id}/unfreeze", response_model=CardResponse)
async def unfreeze_card(
    card_id: int,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> CardResponse:
    return await _set_status(services, card_id, CardStatus.ACTIVE)


@router.post("/cards/{card_id}/cancel", response_model=CardResponse)
async def cancel_card(
    card_id: int,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> CardResponse:
    return await _set_status(services, card_id, CardStatus.CANCELLED)


@router.post("/cards/{card_id}/reset-monthly", response_model=CardResponse)
async def reset_monthly_spend(
    card_id: int,
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> CardResponse:
    """Explicit reset of the monthly counter (e.g. at the billing cycle)."""
    async with services.session_factory() as session:
        repo = LedgerRepository(session)
        try:
            card = await repo.reset_monthly_spend(card_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        await repo.add_audit_log(
            action="card_monthly_reset",
            resource="card",
            resource_id=str(card_id),
            status="completed",
            now=services.clock(),
            account_id=card.account_id,
        )
        await session.commit()
        return _card_response(card)


@router.get("/stats")
async def get_stats(
    _: bool = Depends(require_admin_token),
    services: Services = Depends(get_services),
) -> dict:
    """Ledger statistics and runtime state."""
    return {
        "transactions": await services.reconciler.statistics(),
        "chains": services.registry.chains,
        "dry_run": services.settings.dry_run,
        "notifications_pending": services.dispatcher.pending,
        "notifications_dropped": services.dispatcher.dropped,
    }
