"""Health check endpoints."""

from fastapi import APIRouter, Depends

from spendguard import __version__
from spendguard.api.dependencies import get_services
from spendguard.services import Services

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "spendguard"}


@router.get("/health/detailed")
async def detailed_health(services: Services = Depends(get_services)):
    """Detailed health check with configuration info."""
    return {
        "status": "healthy",
        "service": "spendguard",
        "version": __version__,
        "chains": services.registry.chains,
        "notifications_pending": services.dispatcher.pending,
        "config": services.settings.get_safe_dict(),
    }
