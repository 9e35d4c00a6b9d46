"""Shared FastAPI dependencies and response helpers."""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from spendguard.services import Services

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    """Services attached to the running app."""
    return request.app.state.services


def error_response(status_code: int, error: str, message: str) -> JSONResponse:
    """Structured error envelope with no internal detail."""
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


async def require_account_id(x_account_id: Optional[str] = Header(None)) -> int:
    """Account resolved upstream by the identity service."""
    if not x_account_id:
        raise HTTPException(status_code=401, detail="Missing X-Account-Id header")
    try:
        return int(x_account_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid X-Account-Id header")


async def require_admin_token(
    x_admin_token: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access outside production (dev mode).
    """
    settings = services.settings

    if not settings.admin_token:
        if settings.is_production:
            raise HTTPException(status_code=401, detail="Admin API disabled")
        return True

    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return True
