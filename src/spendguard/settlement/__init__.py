"""Broadcast and reconciliation of on-chain transactions."""

from spendguard.settlement.broadcast import BroadcastService, SubmitResult
from spendguard.settlement.reconciler import ReconcileOutcome, Reconciler, ReconcileStats

__all__ = [
    "BroadcastService",
    "ReconcileOutcome",
    "ReconcileStats",
    "Reconciler",
    "SubmitResult",
]
