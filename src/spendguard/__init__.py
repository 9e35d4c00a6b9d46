"""SpendGuard - spend authorization and settlement tracking for cards and wallets."""

__version__ = "0.1.0"
