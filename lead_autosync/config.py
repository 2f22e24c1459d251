"""Settings loader for the lead auto-sync service.

Configuration is read from an INI file (default: ``config.ini``) with
environment variables as fallbacks. All variables are prefixed with ``LAS_``
except the OAuth client credentials, which keep the provider's usual names.

Environment variables:
  LAS_CONFIG - Path to config.ini file (default: config.ini)
  LAS_LOG_LEVEL - Logging level (default: INFO)
  LAS_DB_PATH - Tenant store path (default: /data/lead_autosync.db)
  LAS_FUNCTIONS_URL - Base URL of the collaborator functions (required)
  LAS_SERVICE_KEY - Service key sent to the collaborators (required)
  GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET - OAuth client (required)
  LAS_TOKEN_URL - OAuth token endpoint
  LAS_STALENESS_SECONDS - Minimum age of the last sync (default: 240)
  LAS_BATCH_SIZE - Tenants processed concurrently (default: 3)
  LAS_BATCH_PAUSE_SECONDS - Pause between batches (default: 1.0)
  LAS_LOOKBACK_DAYS - Lookback used by the scheduled sweep (default: 1)
  LAS_LEASE_SECONDS - Per-tenant lease duration (default: 240)
  LAS_POLL_INTERVAL_SECONDS - Client marker polling interval (default: 120)
  LAS_CACHE_TTL_SECONDS - Dedup cache entry lifetime (default: 86400)
  LAS_HTTP_TIMEOUT_SECONDS - Collaborator request timeout (default: 30)
  LAS_TIMEZONE - Timezone of the business-hours window (default: UTC)
  LAS_BUSINESS_START_HOUR / LAS_BUSINESS_END_HOUR - Window (default: 9-17)
  LAS_HOST / LAS_PORT / LAS_API_TOKEN - HTTP control surface

Config file sections/keys:
  [storage] db_path
  [provider] client_id, client_secret, token_url
  [functions] base_url, service_key, timeout_seconds
  [sweep] staleness_seconds, batch_size, batch_pause_seconds, lookback_days, lease_seconds
  [client] poll_interval_seconds, cache_ttl_seconds
  [auto_reply] timezone, business_start_hour, business_end_hour
  [server] host, port, api_token
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


@dataclass(frozen=True)
class Settings:
    """Immutable runtime settings."""

    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    functions_url: Optional[str] = None
    service_key: Optional[str] = None
    token_url: str = GOOGLE_TOKEN_URL
    db_path: str = "/data/lead_autosync.db"
    staleness_seconds: int = 240
    batch_size: int = 3
    batch_pause_seconds: float = 1.0
    lookback_days: int = 1
    lease_seconds: int = 240
    poll_interval_seconds: float = 120.0
    cache_ttl_seconds: int = 24 * 3600
    http_timeout_seconds: float = 30.0
    timezone: str = "UTC"
    business_start_hour: int = 9
    business_end_hour: int = 17
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: Optional[str] = None

    def validate(self) -> "Settings":
        """Raise :class:`ConfigurationError` naming every missing required value."""
        required = {
            "GOOGLE_CLIENT_ID": self.google_client_id,
            "GOOGLE_CLIENT_SECRET": self.google_client_secret,
            "LAS_FUNCTIONS_URL": self.functions_url,
            "LAS_SERVICE_KEY": self.service_key,
        }
        missing = [name for name, value in required.items() if not value]
        if not self.db_path:
            missing.append("LAS_DB_PATH")
        if missing:
            raise ConfigurationError(missing)
        return self


def load_settings(config_path: str | os.PathLike[str] | None = None) -> Settings:
    """Load settings from the INI file with environment variables as fallbacks.

    Missing required values are not an error here; call
    :meth:`Settings.validate` before any tenant is processed.
    """
    path = Path(config_path or os.getenv("LAS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or None
        if fallback is not None:
            fallback = fallback.strip()
        return fallback or None

    def get_int(section: str, option: str, fallback: str | None, default: int) -> int:
        value = get(section, option, fallback)
        return default if value is None else int(value)

    def get_float(section: str, option: str, fallback: str | None, default: float) -> float:
        value = get(section, option, fallback)
        return default if value is None else float(value)

    db_path = get("storage", "db_path", os.getenv("LAS_DB_PATH")) or Settings.db_path
    return Settings(
        google_client_id=get("provider", "client_id", os.getenv("GOOGLE_CLIENT_ID")),
        google_client_secret=get("provider", "client_secret", os.getenv("GOOGLE_CLIENT_SECRET")),
        token_url=get("provider", "token_url", os.getenv("LAS_TOKEN_URL")) or GOOGLE_TOKEN_URL,
        functions_url=get("functions", "base_url", os.getenv("LAS_FUNCTIONS_URL")),
        service_key=get("functions", "service_key", os.getenv("LAS_SERVICE_KEY")),
        http_timeout_seconds=get_float(
            "functions", "timeout_seconds", os.getenv("LAS_HTTP_TIMEOUT_SECONDS"), Settings.http_timeout_seconds
        ),
        db_path=os.path.expanduser(db_path),
        staleness_seconds=get_int(
            "sweep", "staleness_seconds", os.getenv("LAS_STALENESS_SECONDS"), Settings.staleness_seconds
        ),
        batch_size=get_int("sweep", "batch_size", os.getenv("LAS_BATCH_SIZE"), Settings.batch_size),
        batch_pause_seconds=get_float(
            "sweep", "batch_pause_seconds", os.getenv("LAS_BATCH_PAUSE_SECONDS"), Settings.batch_pause_seconds
        ),
        lookback_days=get_int("sweep", "lookback_days", os.getenv("LAS_LOOKBACK_DAYS"), Settings.lookback_days),
        lease_seconds=get_int("sweep", "lease_seconds", os.getenv("LAS_LEASE_SECONDS"), Settings.lease_seconds),
        poll_interval_seconds=get_float(
            "client", "poll_interval_seconds", os.getenv("LAS_POLL_INTERVAL_SECONDS"), Settings.poll_interval_seconds
        ),
        cache_ttl_seconds=get_int(
            "client", "cache_ttl_seconds", os.getenv("LAS_CACHE_TTL_SECONDS"), Settings.cache_ttl_seconds
        ),
        timezone=get("auto_reply", "timezone", os.getenv("LAS_TIMEZONE")) or Settings.timezone,
        business_start_hour=get_int(
            "auto_reply", "business_start_hour", os.getenv("LAS_BUSINESS_START_HOUR"), Settings.business_start_hour
        ),
        business_end_hour=get_int(
            "auto_reply", "business_end_hour", os.getenv("LAS_BUSINESS_END_HOUR"), Settings.business_end_hour
        ),
        http_host=get("server", "host", os.getenv("LAS_HOST")) or Settings.http_host,
        http_port=get_int("server", "port", os.getenv("LAS_PORT"), Settings.http_port),
        api_token=get("server", "api_token", os.getenv("LAS_API_TOKEN")),
    )
