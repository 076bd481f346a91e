"""Pipeline configuration.

All knobs are read from ``MAILLOG_*`` environment variables. Bad values fail
fast with ConfigurationError so a misconfigured daemon never starts.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigurationError

DEFAULT_IPINFO_URL = "http://ip-api.com/json/{ip}?fields=status,message,isp,org,country"


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    local_domain: str
    log_dir: str = "/var/log"
    file_prefix: str = "mail.log"
    poll_interval: float = 300.0
    batch_lines: int = 500
    db_url: str = "sqlite:///maillog.db"
    admin_mailboxes: tuple[str, ...] = ()
    timezone: str = "UTC"

    # Correlator buffer bounds
    pending_max_age: float = 3600.0
    pending_max_entries: int = 10_000

    # IP enrichment
    ipinfo_url: str = DEFAULT_IPINFO_URL
    ipinfo_rate_limit: int = 45
    ipinfo_timeout: float = 10.0
    ipinfo_ttl_days: int = 14
    enrich_interval: float = 120.0
    enrich_batch: int = 15
    rate_window: float = 60.0

    log_level: str = "INFO"

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)

    def effective_admin_mailboxes(self) -> frozenset[str]:
        """Admin mailboxes, defaulting to root and root@<domain>."""
        if self.admin_mailboxes:
            return frozenset(m.lower() for m in self.admin_mailboxes)
        return frozenset({"root", f"root@{self.local_domain}".lower()})


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc
    if value < 1:
        raise ConfigurationError(f"{name} must be >= 1")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0")
    return value


def _env_list(env: Mapping[str, str], name: str) -> tuple[str, ...]:
    raw = env.get(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def validate_config(cfg: PipelineConfig) -> PipelineConfig:
    """Check cross-field constraints. Returns cfg unchanged when valid."""
    if not cfg.local_domain or "@" in cfg.local_domain:
        raise ConfigurationError("MAILLOG_LOCAL_DOMAIN must be a bare domain (e.g. example.org)")
    if "{ip}" not in cfg.ipinfo_url:
        raise ConfigurationError("MAILLOG_IPINFO_URL must contain an '{ip}' placeholder")
    if not cfg.file_prefix:
        raise ConfigurationError("MAILLOG_FILE_PREFIX must not be empty")
    try:
        ZoneInfo(cfg.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown MAILLOG_TIMEZONE: {cfg.timezone}") from exc
    return cfg


def resolve_config(env: Mapping[str, str] | None = None) -> PipelineConfig:
    """Build a PipelineConfig from environment variables."""
    if env is None:
        env = os.environ

    domain = env.get("MAILLOG_LOCAL_DOMAIN", "").strip().lower()
    if not domain:
        raise ConfigurationError("Missing MAILLOG_LOCAL_DOMAIN.")

    cfg = PipelineConfig(
        local_domain=domain,
        log_dir=env.get("MAILLOG_LOG_DIR", "/var/log"),
        file_prefix=env.get("MAILLOG_FILE_PREFIX", "mail.log"),
        poll_interval=_env_float(env, "MAILLOG_POLL_INTERVAL", 300.0),
        batch_lines=_env_int(env, "MAILLOG_BATCH_LINES", 500),
        db_url=env.get("MAILLOG_DB_URL", "sqlite:///maillog.db"),
        admin_mailboxes=_env_list(env, "MAILLOG_ADMIN_MAILBOXES"),
        timezone=env.get("MAILLOG_TIMEZONE", "UTC"),
        pending_max_age=_env_float(env, "MAILLOG_PENDING_MAX_AGE", 3600.0),
        pending_max_entries=_env_int(env, "MAILLOG_PENDING_MAX_ENTRIES", 10_000),
        ipinfo_url=env.get("MAILLOG_IPINFO_URL", DEFAULT_IPINFO_URL),
        ipinfo_rate_limit=_env_int(env, "MAILLOG_IPINFO_RATE_LIMIT", 45),
        ipinfo_timeout=_env_float(env, "MAILLOG_IPINFO_TIMEOUT", 10.0),
        ipinfo_ttl_days=_env_int(env, "MAILLOG_IPINFO_TTL_DAYS", 14),
        enrich_interval=_env_float(env, "MAILLOG_ENRICH_INTERVAL", 120.0),
        enrich_batch=_env_int(env, "MAILLOG_ENRICH_BATCH", 15),
        log_level=env.get("MAILLOG_LOG_LEVEL", "INFO").upper(),
    )
    return validate_config(cfg)


def configure_logging(level_name: str | None = None) -> None:
    """Configure a reasonable default logging setup.

    Logs go to stderr so the MCP stdio transport keeps a clean stdout.
    """
    level_name = (level_name or os.getenv("MAILLOG_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
