"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from spendguard import __version__
from spendguard.api.dependencies import error_response
from spendguard.authorization.codes import DeclineCode
from spendguard.ledger.database import close_db, init_db
from spendguard.services import Services
from spendguard.settlement.runner import ReconciliationRunner

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    services: Services = app.state.services

    # Startup
    await init_db()
    services.dispatcher.start()
    runner: Optional[ReconciliationRunner] = None
    if services.settings.reconciler_enabled:
        runner = ReconciliationRunner(
            services.reconciler,
            interval=services.settings.reconcile_interval_seconds,
            idempotency=services.idempotency,
        )
        runner.start()

    yield

    # Shutdown
    if runner is not None:
        await runner.stop()
    await services.aclose()
    await close_db()


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(
        exc.status_code, HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"), str(exc.detail)
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return error_response(500, DeclineCode.SYSTEM_ERROR.value, "Internal server error")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    services = services or Services.build()
    settings = services.settings

    app = FastAPI(
        title="SpendGuard API",
        description="Real-time spend authorization for cards and on-chain sends",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Register routes
    from spendguard.api.routers import admin, cards, fraud, limits, transactions
    from spendguard.api.routes import health

    app.include_router(health.router, tags=["Health"])
    app.include_router(cards.router)
    app.include_router(transactions.router)
    app.include_router(limits.router)
    app.include_router(fraud.router)
    app.include_router(admin.router)

    return app


# Default app instance
app = create_app()
