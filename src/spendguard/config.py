"""Application configuration using pydantic-settings.

Every limit, fraud threshold and reconciliation timing used by the
authorization and settlement pipeline is configurable here.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/spendguard.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Spend limits
    # ======================
    daily_limit_usd: Decimal = Field(
        default=Decimal("10000"), description="Account-wide daily spend cap in USD"
    )
    velocity_window_minutes: int = Field(
        default=10, description="Trailing window for the velocity hard cap"
    )
    velocity_max_transactions: int = Field(
        default=5, description="Approved transactions allowed inside the velocity window"
    )

    # ======================
    # Fraud heuristics
    # ======================
    fraud_review_only: bool = Field(
        default=False, description="Approve suspicious spends and flag them for review"
    )
    fraud_average_window_days: int = Field(default=30)
    fraud_spike_multiplier: Decimal = Field(default=Decimal("10"))
    fraud_new_recipient_multiplier: Decimal = Field(default=Decimal("3"))
    fraud_common_recipient_min_count: int = Field(default=3)
    fraud_velocity_threshold: int = Field(
        default=5, description="Score velocity when more than this many recent spends exist"
    )
    fraud_day_start_hour: int = Field(default=6, description="Local hour the day starts")
    fraud_day_end_hour: int = Field(default=22, description="Local hour the night starts")
    fraud_night_skew_ratio: float = Field(
        default=0.25, description="Share of night spends that marks an account night-skewed"
    )
    fraud_history_sample_size: int = Field(default=200)
    geo_anomaly_distance_km: float = Field(default=500.0)
    geo_anomaly_window_minutes: int = Field(default=60)

    # ======================
    # Cashback
    # ======================
    default_cashback_rate: Decimal = Field(default=Decimal("0.02"))

    # ======================
    # Card webhooks
    # ======================
    card_webhook_secrets: str = Field(
        default="", description="Comma-separated provider:secret pairs"
    )
    card_webhook_ips: str = Field(
        default="", description="Comma-separated allow-list of source IPs (empty = any)"
    )
    default_card_provider: str = Field(default="highnote")

    # ======================
    # Rule tables
    # ======================
    rules_path: Optional[str] = Field(
        default=None, description="JSON file with MCC, counterparty and FX tables"
    )

    # ======================
    # Idempotency
    # ======================
    idempotency_ttl_hours: int = Field(default=24)

    # ======================
    # Reconciliation
    # ======================
    reconciler_enabled: bool = Field(default=True)
    reconcile_interval_seconds: float = Field(default=30.0)
    reconcile_batch_size: int = Field(default=100)
    reconcile_timeout_minutes: int = Field(default=60)
    reconcile_max_concurrency: int = Field(default=10)

    # ======================
    # Chain RPC Endpoints
    # ======================
    eth_rpc_url: str = Field(default="https://eth.llamarpc.com", description="Ethereum RPC URL")
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", description="Polygon RPC URL")
    arbitrum_rpc_url: str = Field(default="https://arb1.arbitrum.io/rpc")
    optimism_rpc_url: str = Field(default="https://mainnet.optimism.io")
    bsc_rpc_url: str = Field(default="https://bsc-dataseed.binance.org", description="BSC RPC URL")
    celo_rpc_url: str = Field(default="https://forno.celo.org")
    sol_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    solana_finalized_confirmations: int = Field(
        default=32, description="Confirmation count reported for finalized Solana signatures"
    )
    rpc_timeout_seconds: float = Field(default=15.0)

    # ======================
    # Safety Guards
    # ======================
    dry_run: bool = Field(default=True, description="Use simulated chain clients")

    # ======================
    # Notifications
    # ======================
    telegram_bot_token: str = Field(default="", description="Telegram bot token from BotFather")
    notification_queue_size: int = Field(default=1000)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def webhook_secrets(self) -> dict[str, str]:
        """Parse provider webhook secrets into a mapping."""
        secrets: dict[str, str] = {}
        for pair in self.card_webhook_secrets.split(","):
            if ":" not in pair:
                continue
            provider, secret = pair.split(":", 1)
            if provider.strip() and secret.strip():
                secrets[provider.strip().lower()] = secret.strip()
        return secrets

    @property
    def allowed_webhook_ips(self) -> list[str]:
        """Parse the webhook IP allow-list."""
        return [ip.strip() for ip in self.card_webhook_ips.split(",") if ip.strip()]

    def get_rpc_url(self, chain: str) -> str:
        """Get RPC URL for a specific chain."""
        rpc_map = {
            "ethereum": self.eth_rpc_url,
            "polygon": self.polygon_rpc_url,
            "arbitrum": self.arbitrum_rpc_url,
            "optimism": self.optimism_rpc_url,
            "bsc": self.bsc_rpc_url,
            "celo": self.celo_rpc_url,
            "solana": self.sol_rpc_url,
        }
        return rpc_map.get(chain.lower(), "")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            "webhook_providers": sorted(self.webhook_secrets),
            "limits": {
                "daily_limit_usd": str(self.daily_limit_usd),
                "velocity_window_minutes": self.velocity_window_minutes,
                "velocity_max_transactions": self.velocity_max_transactions,
            },
            "fraud": {
                "review_only": self.fraud_review_only,
                "geo_anomaly_distance_km": self.geo_anomaly_distance_km,
            },
            "reconciliation": {
                "enabled": self.reconciler_enabled,
                "interval_seconds": self.reconcile_interval_seconds,
                "batch_size": self.reconcile_batch_size,
                "timeout_minutes": self.reconcile_timeout_minutes,
            },
            "chains": {
                chain: self.get_rpc_url(chain)
                for chain in ("ethereum", "polygon", "arbitrum", "optimism", "bsc", "celo", "solana")
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
