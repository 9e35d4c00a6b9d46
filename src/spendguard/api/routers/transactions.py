"""On-chain send and transaction status endpoints."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field

from spendguard.api.dependencies import error_response, get_services, require_account_id
from spendguard.authorization.codes import DeclineCode
from spendguard.authorization.engine import AuthorizationResult, SendRequest
from spendguard.idempotency.guard import IdempotencyConflictError
from spendguard.services import Services
from spendguard.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/transactions", tags=["Transactions"])

ENDPOINT = "transactions.send"


class SendBody(BaseModel):
    """Client-signed transfer."""

    model_config = ConfigDict(populate_by_name=True)

    chain: str = Field(min_length=1, max_length=20)
    signed_payload: str = Field(alias="signedPayload", min_length=1)
    wallet_id: int = Field(alias="walletId")
    to_address: str = Field(alias="toAddress", min_length=1, max_length=255)
    amount_usd: Decimal = Field(alias="amountUsd", gt=0)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey", max_length=255)


class SendResponse(BaseModel):
    """Send verdict; ``txHash`` is set once the chain accepted the transaction."""

    model_config = ConfigDict(populate_by_name=True)

    approved: bool
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    reason_code: Optional[str] = Field(default=None, alias="reasonCode")
    message: str

    @classmethod
    def from_result(cls, result: AuthorizationResult) -> "SendResponse":
        return cls(
            approved=result.approved,
            tx_hash=result.tx_hash,
            reason_code=result.reason_code.value if result.reason_code else None,
            message=result.message,
        )


class TransactionStatusResponse(BaseModel):
    """Current settlement state."""

    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(alias="txHash")
    chain: Optional[str] = None
    status: str
    confirmations: int
    block_number: Optional[int] = Field(default=None, alias="blockNumber")


class StatisticsResponse(BaseModel):
    """Ledger counts by status."""

    pending: int
    approved: int
    confirmed: int
    completed: int
    failed: int
    total: int


def _json(status_code: int, body: str) -> Response:
    return Response(content=body, status_code=status_code, media_type="application/json")


@router.post("/send", response_model=SendResponse)
async def send_transaction(
    body: SendBody,
    account_id: int = Depends(require_account_id),
    idempotency_key: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> Response:
    """Vet a client-signed transaction and broadcast it if approved.

    Returns as soon as the chain accepts the transaction.
    """
    key = idempotency_key or body.idempotency_key
    send_request = SendRequest(
        account_id=account_id,
        wallet_id=body.wallet_id,
        chain=body.chain,
        signed_payload=body.signed_payload,
        to_address=body.to_address,
        amount_usd=body.amount_usd,
    )

    if not key:
        return await _send(services, send_request)

    scope = str(account_id)
    try:
        async with services.idempotency.hold(key, scope):
            stored = await services.idempotency.check(key, scope, endpoint=ENDPOINT)
            if stored.is_duplicate:
                return _json(stored.status_code, stored.stored_response)

            response = await _send(services, send_request)
            if response.status_code == 200:
                try:
                    await services.idempotency.store(
                        key, scope, ENDPOINT, response.body.decode(), response.status_code
                    )
                except Exception as e:
                    logger.error(f"Failed to store idempotency record {key}: {e}")
            return response
    except IdempotencyConflictError as e:
        return error_response(409, "IDEMPOTENCY_CONFLICT", str(e))
    except LockTimeoutError:
        return error_response(503, DeclineCode.SYSTEM_ERROR.value, "Request in progress, retry later")


async def _send(services: Services, send_request: SendRequest) -> Response:
    result = await services.engine.authorize_send(send_request)
    payload = SendResponse.from_result(result).model_dump_json(by_alias=True)
    return _json(503 if result.is_system_error else 200, payload)


@router.get("/stats/summary", response_model=StatisticsResponse)
async def transaction_statistics(services: Services = Depends(get_services)) -> StatisticsResponse:
    """Ledger counts by status."""
    return StatisticsResponse(**await services.reconciler.statistics())


@router.get("/{tx_hash}", response_model=TransactionStatusResponse, response_model_by_alias=True)
async def transaction_status(
    tx_hash: str,
    services: Services = Depends(get_services),
) -> TransactionStatusResponse:
    """Current status, refreshed from the chain if still pending."""
    tx = await services.reconciler.check_by_hash(tx_hash)
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    return TransactionStatusResponse(
        tx_hash=tx.tx_hash,
        chain=tx.chain,
        status=str(getattr(tx.status, "value", tx.status)),
        confirmations=tx.confirmations,
        block_number=tx.block_number,
    )
