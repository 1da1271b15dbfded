import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from ownership_platform.errors import ConfigurationError

# Optional: load a local .env file if present.
try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    # If python-dotenv isn't installed or .env isn't present, that's fine.
    pass


def _env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    """Parse a boolean environment variable.

    Returns:
      - True/False if the env var is set to a recognizable value
      - default if unset or unrecognized

    Accepted truthy: 1, true, yes, y, on
    Accepted falsy:  0, false, no, n, off
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    return default


def _env_float(name: str) -> Optional[float]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return None
    return float(raw)


@dataclass(frozen=True)
class Config:
    """Runtime configuration.

    IMPORTANT: Provide credentials via environment variables or a .env file.
    Do not hardcode secrets in source code.
    """

    # -----------------
    # Core
    # -----------------
    # Local store: OWNERSHIP_DATABASE_URL (or DATABASE_URL) for Postgres,
    # OWNERSHIP_DB_PATH for SQLite.
    DB_DSN: str = (
        os.environ.get("OWNERSHIP_DATABASE_URL")
        or os.environ.get("DATABASE_URL")
        or os.environ.get("OWNERSHIP_DB_PATH", "./ownership_platform.sqlite")
    )

    # Remote analytical database, addressed by name + access token.
    # When ANALYTICS_DB_NAME is set it takes precedence over DB_DSN.
    ANALYTICS_DB_NAME: str | None = (os.environ.get("ANALYTICS_DB_NAME") or "").strip() or None
    ANALYTICS_DB_TOKEN: str | None = (os.environ.get("ANALYTICS_DB_TOKEN") or "").strip() or None
    ANALYTICS_DB_HOST: str = os.environ.get("ANALYTICS_DB_HOST", "localhost:5432")
    ANALYTICS_DB_USER: str = os.environ.get("ANALYTICS_DB_USER", "analytics")

    # Gateway
    GATEWAY_HEALTH_CHECK_SECONDS: float = float(os.environ.get("GATEWAY_HEALTH_CHECK_SECONDS", "60"))

    # SEC (EDGAR requires a descriptive User-Agent)
    SEC_USER_AGENT: str = os.environ.get(
        "SEC_USER_AGENT",
        "OwnershipPlatform/0.1 (contact: you@example.com)",
    )

    # SEC throttling (polite rate limiting) + retry budget.
    SEC_MIN_INTERVAL_SECONDS: float = float(os.environ.get("SEC_MIN_INTERVAL_SECONDS", "0.12"))
    SEC_MAX_CONCURRENCY: int = int(os.environ.get("SEC_MAX_CONCURRENCY", "10"))
    SEC_MAX_RETRIES: int = int(os.environ.get("SEC_MAX_RETRIES", "3"))

    # Feed sync
    FEED_ENTRY_COUNT: int = int(os.environ.get("FEED_ENTRY_COUNT", "100"))

    # Bulk archives: previously downloaded ZIPs are reused from here.
    DATA_DIR: str = os.environ.get("OWNERSHIP_DATA_DIR", "./data/backfill")

    # OpenFIGI (CUSIP -> ticker)
    OPENFIGI_API_KEY: str | None = (os.environ.get("OPENFIGI_API_KEY") or "").strip() or None
    OPENFIGI_URL: str = os.environ.get("OPENFIGI_URL", "https://api.openfigi.com/v3/mapping")

    # Accumulation alerts
    ALERT_MIN_CHANGE: float = float(os.environ.get("ALERT_MIN_CHANGE", "5.0"))
    ALERT_MAX_CHANGE: float | None = _env_float("ALERT_MAX_CHANGE")
    ALERT_MIN_START_VALUE: float = float(os.environ.get("ALERT_MIN_START_VALUE", "1000000"))
    ALERT_LOOKBACK_MONTHS: int = int(os.environ.get("ALERT_LOOKBACK_MONTHS", "24"))
    ALERT_ONLY_MAPPED: bool = _env_bool("ALERT_ONLY_MAPPED", False) is True
    ALERT_CACHE_TTL_SECONDS: float = float(os.environ.get("ALERT_CACHE_TTL_SECONDS", "900"))

    def resolve_dsn(self) -> str:
        """DSN the Gateway should connect to."""
        if not self.ANALYTICS_DB_NAME:
            return self.DB_DSN
        self.require_credentials()
        token = quote(str(self.ANALYTICS_DB_TOKEN), safe="")
        user = quote(self.ANALYTICS_DB_USER, safe="")
        return f"postgresql://{user}:{token}@{self.ANALYTICS_DB_HOST}/{self.ANALYTICS_DB_NAME}?sslmode=require"

    def require_credentials(self) -> None:
        if self.ANALYTICS_DB_NAME and not self.ANALYTICS_DB_TOKEN:
            raise ConfigurationError(
                f"ANALYTICS_DB_TOKEN is required to reach analytical database {self.ANALYTICS_DB_NAME!r}"
            )
        if not (self.SEC_USER_AGENT or "").strip():
            raise ConfigurationError("SEC_USER_AGENT must be set (EDGAR rejects anonymous clients)")


def load_config() -> Config:
    return Config()
