"""Idempotent request handling."""

from spendguard.idempotency.guard import (
    IdempotencyCheck,
    IdempotencyConflictError,
    IdempotencyGuard,
)

__all__ = ["IdempotencyCheck", "IdempotencyConflictError", "IdempotencyGuard"]
