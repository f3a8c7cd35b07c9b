import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/gamevault.db"

    # Money
    commission_rate: float = 0.10  # 10% platform commission, frozen into each sale
    currency_quantum: str = "0.01"  # smallest currency unit
    default_currency: str = "USD"

    # Business timeouts
    escrow_auto_release_hours: int = 24  # CONFIRMED -> RELEASED after buyer silence
    purchase_expiry_hours: int = 24  # unpaid PENDING purchases
    sale_expiry_hours: int = 24  # PENDING sales
    dispute_overdue_hours: int = 48
    dispute_escalation_enabled: bool = True

    # Scheduler
    sweep_interval_seconds: int = 300  # Every 5 minutes
    sweep_max_retries: int = 3

    # Logging
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()

_logger = logging.getLogger("gamevault.config")


def validate_settings(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if not 0 <= cfg.commission_rate < 1:
        raise RuntimeError(
            f"FATAL: COMMISSION_RATE must be in [0, 1), got {cfg.commission_rate}"
        )

    for name in (
        "escrow_auto_release_hours",
        "purchase_expiry_hours",
        "sale_expiry_hours",
        "dispute_overdue_hours",
        "sweep_interval_seconds",
    ):
        if getattr(cfg, name) <= 0:
            raise RuntimeError(f"FATAL: {name.upper()} must be positive")

    if cfg.database_url.startswith("sqlite"):
        if is_prod:
            warnings.warn(
                "DATABASE_URL points at SQLite in production. "
                "Bulk sweeps and concurrent purchases need PostgreSQL for real row locking.",
                stacklevel=1,
            )
        else:
            _logger.debug("Using SQLite ledger at %s", cfg.database_url)
