"""Card authorization webhook.

Called by the card issuer before approving a swipe. Every well-formed
decision is HTTP 200 with a structured payload; only authentication
failures, malformed bodies and internal errors use other status codes.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from spendguard.api.dependencies import error_response, get_services
from spendguard.authorization.codes import DeclineCode
from spendguard.authorization.engine import AuthorizationResult, CardAuthorizationRequest
from spendguard.authorization.verifier import client_ip_from_headers
from spendguard.idempotency.guard import IdempotencyConflictError
from spendguard.services import Services
from spendguard.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cards", tags=["Cards"])

ENDPOINT = "cards.authorize"


class CardAuthorizeBody(BaseModel):
    """Authorization request from the card network."""

    model_config = ConfigDict(populate_by_name=True)

    instrument_id: int = Field(alias="instrumentId")
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=10)
    merchant_country: str = Field(alias="merchantCountry", min_length=2, max_length=2)
    mcc: str = Field(pattern=r"^\d{4}$")
    merchant_name: Optional[str] = Field(default=None, alias="merchantName", max_length=255)
    amount_usd: Optional[Decimal] = Field(default=None, alias="amountUsd", gt=0)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class CardAuthorizeResponse(BaseModel):
    """Approve/decline payload."""

    model_config = ConfigDict(populate_by_name=True)

    approved: bool
    reason_code: Optional[str] = Field(default=None, alias="reasonCode")
    message: str
    transaction_id: Optional[int] = Field(default=None, alias="transactionId")
    cashback_amount: Optional[Decimal] = Field(default=None, alias="cashbackAmount")
    is_anomaly: bool = Field(default=False, alias="isAnomaly")

    @classmethod
    def from_result(cls, result: AuthorizationResult) -> "CardAuthorizeResponse":
        return cls(
            approved=result.approved,
            reason_code=result.reason_code.value if result.reason_code else None,
            message=result.message,
            transaction_id=result.transaction_id,
            cashback_amount=result.cashback_amount,
            is_anomaly=result.is_anomaly,
        )


def _json(status_code: int, body: str) -> Response:
    return Response(content=body, status_code=status_code, media_type="application/json")


@router.post("/authorize", response_model=CardAuthorizeResponse)
async def authorize_card(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    x_card_provider: Optional[str] = Header(None),
    x_forwarded_for: Optional[str] = Header(None),
    x_real_ip: Optional[str] = Header(None),
    idempotency_key: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> Response:
    """Decide a card authorization in real time."""
    raw_body = await request.body()
    client_ip = client_ip_from_headers(
        x_forwarded_for, x_real_ip, request.client.host if request.client else None
    )

    verification = services.verifier.check(raw_body, x_webhook_signature, x_card_provider, client_ip)
    if not verification.ok:
        status_code = 403 if verification.code == DeclineCode.FORBIDDEN else 401
        return error_response(status_code, verification.code.value, verification.message)

    try:
        body = CardAuthorizeBody.model_validate_json(raw_body)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False))

    auth_request = CardAuthorizationRequest(
        instrument_id=body.instrument_id,
        amount=body.amount,
        currency=body.currency.upper(),
        merchant_country=body.merchant_country.upper(),
        mcc=body.mcc,
        merchant_name=body.merchant_name,
        amount_usd=body.amount_usd,
        latitude=body.latitude,
        longitude=body.longitude,
        client_ip=client_ip,
    )
    if services.engine.resolve_amount_usd(auth_request) is None:
        return error_response(422, "VALIDATION_ERROR", f"Unsupported currency {body.currency}")

    if not idempotency_key:
        return await _decide(services, auth_request)

    account_id = await services.engine.card_account_id(body.instrument_id)
    scope = str(account_id) if account_id is not None else f"card:{body.instrument_id}"
    try:
        async with services.idempotency.hold(idempotency_key, scope):
            stored = await services.idempotency.check(idempotency_key, scope, endpoint=ENDPOINT)
            if stored.is_duplicate:
                return _json(stored.status_code, stored.stored_response)

            response = await _decide(services, auth_request)
            if response.status_code == 200:
                try:
                    await services.idempotency.store(
                        idempotency_key, scope, ENDPOINT, response.body.decode(), response.status_code
                    )
                except Exception as e:
                    logger.error(f"Failed to store idempotency record {idempotency_key}: {e}")
            return response
    except IdempotencyConflictError as e:
        return error_response(409, "IDEMPOTENCY_CONFLICT", str(e))
    except LockTimeoutError:
        return error_response(503, DeclineCode.SYSTEM_ERROR.value, "Request in progress, retry later")


async def _decide(services: Services, auth_request: CardAuthorizationRequest) -> Response:
    result = await services.engine.authorize(auth_request)
    payload = CardAuthorizeResponse.from_result(result).model_dump_json(by_alias=True)
    return _json(503 if result.is_system_error else 200, payload)
