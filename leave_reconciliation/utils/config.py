"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when an environment variable cannot be coerced."""


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean flag, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    member_match_min_confidence: int
    member_match_common_name_min_confidence: int
    member_match_high_confidence: int
    member_match_top_confidence: int
    member_match_lead_margin: int
    default_priority_policy: str
    commit_all_or_nothing: bool
    import_date_formats: tuple[str, ...]
    import_source_tag: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; call `get_settings.cache_clear()` to reload."""
    return Settings(
        app_name=_env_str("LEAVE_RECON_APP_NAME", "leave-reconciliation"),
        app_version=_env_str("LEAVE_RECON_APP_VERSION", "0.1.0"),
        log_level=_env_str("LEAVE_RECON_LOG_LEVEL", "INFO"),
        database_path=Path(
            _env_str("LEAVE_RECON_DB_PATH", "data/leave_reconciliation.db")
        ),
        member_match_min_confidence=_env_int("LEAVE_RECON_MATCH_MIN_CONFIDENCE", 30),
        member_match_common_name_min_confidence=_env_int(
            "LEAVE_RECON_MATCH_COMMON_NAME_MIN_CONFIDENCE", 40
        ),
        member_match_high_confidence=_env_int("LEAVE_RECON_MATCH_HIGH_CONFIDENCE", 90),
        member_match_top_confidence=_env_int("LEAVE_RECON_MATCH_TOP_CONFIDENCE", 80),
        member_match_lead_margin=_env_int("LEAVE_RECON_MATCH_LEAD_MARGIN", 20),
        default_priority_policy=_env_str("LEAVE_RECON_PRIORITY_POLICY", "requested_at"),
        commit_all_or_nothing=_env_bool("LEAVE_RECON_ALL_OR_NOTHING", False),
        import_date_formats=tuple(
            item.strip()
            for item in _env_str(
                "LEAVE_RECON_IMPORT_DATE_FORMATS",
                "%Y-%m-%d,%m/%d/%Y,%m/%d/%y,%Y%m%d",
            ).split(",")
            if item.strip()
        ),
        import_source_tag=_env_str("LEAVE_RECON_IMPORT_SOURCE", "ical"),
    )
