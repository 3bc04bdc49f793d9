"""session-ledger configuration."""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger("ledger.config")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# On-disk layout (relative to the project root)
LEDGER_DIR_NAME = os.getenv("LEDGER_DIR_NAME", ".ledger")
DB_FILENAME = os.getenv("LEDGER_DB_FILENAME", "local.db")
PROJECT_CONFIG_FILENAME = "config.yaml"

# SQLite
BUSY_TIMEOUT_MS = _env_int("LEDGER_BUSY_TIMEOUT_MS", 5000)

# Retention defaults
CLEANUP_POLICY = os.getenv("LEDGER_CLEANUP_POLICY", "grace")
GRACE_DAYS = _env_int("LEDGER_GRACE_DAYS", 7)
CLEANUP_POLICIES = ("immediate", "grace", "never")

# Continuation linking
BREADCRUMB_MAX_AGE_SECONDS = _env_int("LEDGER_BREADCRUMB_MAX_AGE_SECONDS", 300)

# Logging / telemetry
LOG_LEVEL = os.getenv("LEDGER_LOG_LEVEL", "WARNING")
OTEL_ENABLED = _env_bool("LEDGER_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("LEDGER_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("LEDGER_OTEL_SERVICE_NAME", "session-ledger")


@dataclass(frozen=True)
class RetentionSettings:
    policy: str = CLEANUP_POLICY
    grace_days: int = GRACE_DAYS
    breadcrumb_max_age_seconds: int = BREADCRUMB_MAX_AGE_SECONDS


def _coerce_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def load_project_settings(project_dir: Path) -> RetentionSettings:
    """Read `<project>/.ledger/config.yaml`, falling back to env defaults.

    A missing file is the common case. An unreadable or malformed file is
    logged and ignored so a bad config never blocks ingestion.
    """
    defaults = RetentionSettings()
    config_path = Path(project_dir) / LEDGER_DIR_NAME / PROJECT_CONFIG_FILENAME
    if not config_path.is_file():
        return defaults

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable project config %s: %s", config_path, exc)
        return defaults
    if not isinstance(raw, dict):
        logger.warning("Ignoring project config %s: expected a mapping", config_path)
        return defaults

    retention = raw.get("retention") if isinstance(raw.get("retention"), dict) else {}
    links = raw.get("links") if isinstance(raw.get("links"), dict) else {}

    policy = str(retention.get("policy", defaults.policy)).strip().lower()
    if policy not in CLEANUP_POLICIES:
        logger.warning("Unknown cleanup policy %r in %s, using %s", policy, config_path, defaults.policy)
        policy = defaults.policy

    return RetentionSettings(
        policy=policy,
        grace_days=_coerce_int(retention.get("graceDays"), defaults.grace_days),
        breadcrumb_max_age_seconds=_coerce_int(
            links.get("breadcrumbMaxAgeSeconds"), defaults.breadcrumb_max_age_seconds
        ),
    )
