"""
Settings service for engine configuration.

Values come from environment variables (a local .env file is loaded first).
"""

import os
import logging
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def get_bool_env(key: str, default: bool = True) -> bool:
    """
    Parse a boolean environment variable from a string value.

    Args:
        key: Environment variable name
        default: Default value if the variable is not set

    Returns:
        bool: Parsed boolean value
    """
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def get_int_env(key: str, default: int) -> int:
    """Parse an integer environment variable, falling back to default on bad input."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {key}={value!r}, using default {default}")
        return default


def get_float_env(key: str, default: float) -> float:
    """Parse a float environment variable, falling back to default on bad input."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {key}={value!r}, using default {default}")
        return default


@dataclass
class EngineSettings:
    backup_dir: str = "./backups/standings"
    report_dir: str = "./reports"
    migration_batch_size: int = 50
    migration_workers: int = 1
    migration_max_error_rate: float = 0.1
    pre_validation_error_tolerance: int = 0
    repair_max_failures: int = 0
    repair_backup_first: bool = False
    backup_retention_days: int = 30
    backup_keep_minimum: int = 5
    snapshot_base_timeout_seconds: float = 30.0
    snapshot_timeout_per_row_ms: float = 5.0
    log_level: str = "INFO"


def load_settings() -> EngineSettings:
    """
    Build EngineSettings from the environment.

    Returns:
        EngineSettings with every unset variable at its default
    """
    defaults = EngineSettings()
    settings = EngineSettings(
        backup_dir=os.getenv("BACKUP_DIR", defaults.backup_dir),
        report_dir=os.getenv("REPORT_DIR", defaults.report_dir),
        migration_batch_size=max(1, get_int_env("MIGRATION_BATCH_SIZE", defaults.migration_batch_size)),
        migration_workers=max(1, get_int_env("MIGRATION_WORKERS", defaults.migration_workers)),
        migration_max_error_rate=get_float_env("MIGRATION_MAX_ERROR_RATE", defaults.migration_max_error_rate),
        pre_validation_error_tolerance=get_int_env(
            "PRE_VALIDATION_ERROR_TOLERANCE", defaults.pre_validation_error_tolerance
        ),
        repair_max_failures=get_int_env("REPAIR_MAX_FAILURES", defaults.repair_max_failures),
        repair_backup_first=get_bool_env("REPAIR_BACKUP_FIRST", defaults.repair_backup_first),
        backup_retention_days=get_int_env("BACKUP_RETENTION_DAYS", defaults.backup_retention_days),
        backup_keep_minimum=get_int_env("BACKUP_KEEP_MINIMUM", defaults.backup_keep_minimum),
        snapshot_base_timeout_seconds=get_float_env(
            "SNAPSHOT_BASE_TIMEOUT_SECONDS", defaults.snapshot_base_timeout_seconds
        ),
        snapshot_timeout_per_row_ms=get_float_env(
            "SNAPSHOT_TIMEOUT_PER_ROW_MS", defaults.snapshot_timeout_per_row_ms
        ),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )
    logger.debug(f"Loaded engine settings: {settings}")
    return settings
