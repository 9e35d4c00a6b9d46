"""Utility modules for SpendGuard."""

from spendguard.utils.locks import KeyedLock, LockTimeoutError

__all__ = ["KeyedLock", "LockTimeoutError"]
