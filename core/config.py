"""
Migration configuration using Pydantic Settings
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import ValidationError, validator
from pydantic_settings import BaseSettings

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_FILE = ".env.migration"

DUPLICATE_STRATEGIES = ("keep-first", "keep-all", "manual-review")
LOG_LEVELS = ("DEBUG", "INFO", "WARN", "WARNING", "ERROR")

EXTRACTION_REQUIRED = (
    "SSH_HOST",
    "SSH_USERNAME",
    "SSH_PRIVATE_KEY_PATH",
    "LEGACY_DB_HOST",
    "LEGACY_DB_NAME",
    "LEGACY_DB_USER",
    "LEGACY_DB_PASSWORD",
)
IMPORT_REQUIRED = ("TARGET_API_URL",)

SECRET_FIELDS = ("LEGACY_DB_PASSWORD", "MIGRATION_AUTH_TOKEN")

# camelCase / snake_case keys accepted in sectioned JSON config files
CONFIG_FILE_SECTIONS: Dict[str, Dict[str, str]] = {
    "ssh": {
        "host": "SSH_HOST",
        "port": "SSH_PORT",
        "username": "SSH_USERNAME",
        "privateKeyPath": "SSH_PRIVATE_KEY_PATH",
        "private_key_path": "SSH_PRIVATE_KEY_PATH",
        "localPort": "SSH_LOCAL_PORT",
        "local_port": "SSH_LOCAL_PORT",
        "knownHosts": "SSH_KNOWN_HOSTS",
        "known_hosts": "SSH_KNOWN_HOSTS",
        "readyTimeout": "SSH_READY_TIMEOUT",
        "ready_timeout": "SSH_READY_TIMEOUT",
    },
    "database": {
        "host": "LEGACY_DB_HOST",
        "port": "LEGACY_DB_PORT",
        "database": "LEGACY_DB_NAME",
        "name": "LEGACY_DB_NAME",
        "user": "LEGACY_DB_USER",
        "username": "LEGACY_DB_USER",
        "password": "LEGACY_DB_PASSWORD",
        "poolSize": "LEGACY_DB_POOL_SIZE",
        "pool_size": "LEGACY_DB_POOL_SIZE",
    },
    "api": {
        "baseUrl": "TARGET_API_URL",
        "base_url": "TARGET_API_URL",
        "url": "TARGET_API_URL",
        "authToken": "MIGRATION_AUTH_TOKEN",
        "auth_token": "MIGRATION_AUTH_TOKEN",
    },
    "migration": {
        "batchSize": "MIGRATION_BATCH_SIZE",
        "batch_size": "MIGRATION_BATCH_SIZE",
        "delayBetweenBatches": "MIGRATION_DELAY_BETWEEN_BATCHES",
        "delay_between_batches": "MIGRATION_DELAY_BETWEEN_BATCHES",
        "maxRetries": "MIGRATION_MAX_RETRIES",
        "max_retries": "MIGRATION_MAX_RETRIES",
        "retryBackoffMs": "MIGRATION_RETRY_BACKOFF_MS",
        "retry_backoff_ms": "MIGRATION_RETRY_BACKOFF_MS",
        "dryRun": "MIGRATION_DRY_RUN",
        "dry_run": "MIGRATION_DRY_RUN",
        "stopOnError": "MIGRATION_STOP_ON_ERROR",
        "stop_on_error": "MIGRATION_STOP_ON_ERROR",
        "saveStateOnError": "MIGRATION_SAVE_STATE_ON_ERROR",
        "save_state_on_error": "MIGRATION_SAVE_STATE_ON_ERROR",
        "duplicateStrategy": "MIGRATION_DUPLICATE_STRATEGY",
        "duplicate_strategy": "MIGRATION_DUPLICATE_STRATEGY",
        "fuzzyMatching": "MIGRATION_FUZZY_MATCHING",
        "fuzzy_matching": "MIGRATION_FUZZY_MATCHING",
        "fuzzyThreshold": "MIGRATION_FUZZY_THRESHOLD",
        "fuzzy_threshold": "MIGRATION_FUZZY_THRESHOLD",
        "ingredientMatchCount": "MIGRATION_INGREDIENT_MATCH_COUNT",
        "ingredient_match_count": "MIGRATION_INGREDIENT_MATCH_COUNT",
        "outputDir": "MIGRATION_OUTPUT_DIR",
        "output_dir": "MIGRATION_OUTPUT_DIR",
        "spotCheckCount": "MIGRATION_SPOT_CHECK_COUNT",
        "spot_check_count": "MIGRATION_SPOT_CHECK_COUNT",
    },
    "logging": {
        "level": "MIGRATION_LOG_LEVEL",
        "verbose": "MIGRATION_VERBOSE",
    },
}


class MigrationSettings(BaseSettings):
    """Migration settings with environment variable support"""

    # SSH tunnel
    SSH_HOST: Optional[str] = None
    SSH_PORT: int = 22
    SSH_USERNAME: Optional[str] = None
    SSH_PRIVATE_KEY_PATH: Optional[str] = None
    SSH_LOCAL_PORT: int = 5433
    SSH_KNOWN_HOSTS: Optional[str] = None
    SSH_READY_TIMEOUT: float = 30.0

    # Legacy database (reached through the tunnel)
    LEGACY_DB_HOST: Optional[str] = None
    LEGACY_DB_PORT: int = 5432
    LEGACY_DB_NAME: Optional[str] = None
    LEGACY_DB_USER: Optional[str] = None
    LEGACY_DB_PASSWORD: Optional[str] = None
    LEGACY_DB_POOL_SIZE: int = 10

    # Target API
    TARGET_API_URL: Optional[str] = None
    MIGRATION_AUTH_TOKEN: Optional[str] = None

    # Import behaviour
    MIGRATION_BATCH_SIZE: int = 50
    MIGRATION_DELAY_BETWEEN_BATCHES: int = 100  # milliseconds
    MIGRATION_MAX_RETRIES: int = 3
    MIGRATION_RETRY_BACKOFF_MS: int = 1000
    MIGRATION_DRY_RUN: bool = False
    MIGRATION_STOP_ON_ERROR: bool = False
    MIGRATION_SAVE_STATE_ON_ERROR: bool = True

    # Validation
    MIGRATION_DUPLICATE_STRATEGY: str = "manual-review"
    MIGRATION_FUZZY_MATCHING: bool = True
    MIGRATION_FUZZY_THRESHOLD: int = 3
    MIGRATION_INGREDIENT_MATCH_COUNT: int = 3

    # Verification
    MIGRATION_SPOT_CHECK_COUNT: int = 10

    # Logging / output
    MIGRATION_LOG_LEVEL: str = "INFO"
    MIGRATION_VERBOSE: bool = False
    MIGRATION_OUTPUT_DIR: str = "./migration-data"

    class Config:
        env_file = ENV_FILE
        case_sensitive = True
        extra = "ignore"

    @validator("SSH_PORT", "SSH_LOCAL_PORT", "LEGACY_DB_PORT")
    def check_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got {v}")
        return v

    @validator("MIGRATION_BATCH_SIZE")
    def check_batch_size(cls, v):
        if not 1 <= v <= 1000:
            raise ValueError(f"batch size must be between 1 and 1000, got {v}")
        return v

    @validator(
        "MIGRATION_DELAY_BETWEEN_BATCHES",
        "MIGRATION_MAX_RETRIES",
        "MIGRATION_RETRY_BACKOFF_MS",
        "MIGRATION_SPOT_CHECK_COUNT"
    )
    def check_non_negative(cls, v):
        if v < 0:
            raise ValueError(f"value must be non-negative, got {v}")
        return v

    @validator("LEGACY_DB_POOL_SIZE", "MIGRATION_INGREDIENT_MATCH_COUNT")
    def check_positive(cls, v):
        if v < 1:
            raise ValueError(f"value must be at least 1, got {v}")
        return v

    @validator("TARGET_API_URL")
    def check_api_url(cls, v):
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"invalid API URL: {v}")
        return v.rstrip("/")

    @validator("MIGRATION_DUPLICATE_STRATEGY")
    def check_duplicate_strategy(cls, v):
        if v not in DUPLICATE_STRATEGIES:
            raise ValueError(f"duplicate strategy must be one of {', '.join(DUPLICATE_STRATEGIES)}")
        return v

    @validator("MIGRATION_LOG_LEVEL")
    def check_log_level(cls, v):
        v = v.upper()
        if v not in LOG_LEVELS:
            raise ValueError("log level must be one of DEBUG, INFO, WARN, ERROR")
        return "WARN" if v == "WARNING" else v

    @property
    def log_level(self) -> int:
        """Stdlib logging level for MIGRATION_LOG_LEVEL."""
        if self.MIGRATION_LOG_LEVEL == "WARN":
            return logging.WARNING
        return getattr(logging, self.MIGRATION_LOG_LEVEL, logging.INFO)

    @property
    def output_dir(self) -> Path:
        return Path(self.MIGRATION_OUTPUT_DIR)

    def missing(self, names) -> List[str]:
        return [name for name in names if not getattr(self, name)]

    def require(self, names) -> None:
        """Raise ConfigurationError listing every unset variable in ``names``."""
        missing = self.missing(names)
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                metadata={"missing": missing}
            )

    def require_extraction(self) -> None:
        self.require(EXTRACTION_REQUIRED)

    def require_import(self) -> None:
        if not self.MIGRATION_DRY_RUN:
            self.require(IMPORT_REQUIRED)

    def safe_dict(self) -> Dict[str, Any]:
        """Settings as a dict with secrets masked, for logs and reports."""
        data = self.dict()
        for name in SECRET_FIELDS:
            if data.get(name):
                data[name] = "***"
        return data


def read_config_file(path: str) -> Dict[str, Any]:
    """
    Read a JSON config file into flat setting overrides.

    Top-level keys may be setting names (``MIGRATION_BATCH_SIZE``) or one of
    the sections in CONFIG_FILE_SECTIONS.
    """
    config_path = Path(path).expanduser()
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Config file not found: {config_path}",
            original_exception=e
        )
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Config file is not valid JSON: {config_path}",
            metadata={"line": e.lineno},
            original_exception=e
        )

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file must contain a JSON object: {config_path}")

    overrides: Dict[str, Any] = {}
    for key, value in raw.items():
        section = CONFIG_FILE_SECTIONS.get(key)
        if section is None:
            overrides[key] = value
            continue
        if not isinstance(value, dict):
            raise ConfigurationError(f"Config section '{key}' must be an object")
        for sub_key, sub_value in value.items():
            name = section.get(sub_key)
            if name is None:
                logger.warning(f"Ignoring unknown config key {key}.{sub_key}")
                continue
            overrides[name] = sub_value

    return overrides


def load_settings(
    config_path: Optional[str] = None,
    env_file: Optional[str] = ENV_FILE,
    **overrides: Any
) -> MigrationSettings:
    """
    Build settings from the environment, ``env_file``, an optional JSON config
    file, and keyword overrides, in increasing order of precedence.

    Raises:
        ConfigurationError: if any value fails validation
    """
    values: Dict[str, Any] = {}
    if config_path:
        values.update(read_config_file(config_path))
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return MigrationSettings(_env_file=env_file, **values)
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid migration configuration",
            metadata={"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]},
            original_exception=e
        )
