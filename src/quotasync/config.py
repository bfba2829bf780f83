"""Configuration file loader for quota-sync.

Loads store, engine and bucket backend configuration from TOML files, with
support for environment variable expansion.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import tomllib

from quotasync.exceptions import ConfigValidationError
from quotasync.schemas import QuotaSettings
from quotasync.validation import (
    validate_bucket_config,
    validate_engine_config,
    validate_store_config,
)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "QUOTA_SYNC_CONFIG"
CONFIG_FILENAME = "quota-sync.toml"


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment variables in configuration keys and values.

    Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax (bash-like default values).
    Numeric strings are converted to int/float.

    Example:
        >>> _expand_env_vars("redis://${REDIS_HOST}:6379/0")
        "redis://localhost:6379/0"  # If REDIS_HOST=localhost
        >>> _expand_env_vars("${EXPIRY_MS:-7200000}")
        7200000
    """
    if isinstance(obj, dict):
        return {
            (_expand_env_vars(key) if isinstance(key, str) else key): _expand_env_vars(value)
            for key, value in obj.items()
        }

    if isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]

    if isinstance(obj, str):

        def replace_with_default(match):
            return os.environ.get(match.group(1), match.group(2))

        result = re.sub(r"\$\{([^}:]+):-([^}]+)\}", replace_with_default, obj)
        result = os.path.expandvars(result)

        if result == obj:
            # Literal strings keep their TOML type
            return obj

        try:
            if "." in result or "e" in result.lower():
                return float(result)
            return int(result)
        except ValueError:
            return result

    return obj


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    value = config.get(name, {})
    if not isinstance(value, dict):
        raise ConfigValidationError(
            f"{name} section must be a dictionary",
            field=name,
            expected="dict",
            received=type(value).__name__,
        )
    return value


def _load_stores(stores: dict[str, Any], settings: QuotaSettings) -> None:
    for store_id, store_config in stores.items():
        if not isinstance(store_config, dict):
            raise ConfigValidationError(
                f"Store '{store_id}' configuration must be a dictionary",
                field=f"stores.{store_id}",
                expected="dict",
                received=type(store_config).__name__,
            )

        engine = store_config.get("engine", "redis")
        params = {k: v for k, v in store_config.items() if k != "engine"}
        settings.stores[store_id] = validate_store_config(engine, params)
        logger.info("Store '%s' loaded (engine=%s)", store_id, engine)


def _check_store(owner: str, store_id: str, settings: QuotaSettings) -> None:
    if store_id not in settings.stores:
        raise ConfigValidationError(
            f"{owner} references unknown store '{store_id}'. "
            f"Store must be defined in the same TOML file.",
            field=f"{owner}.store",
            expected=f"one of {list(settings.stores.keys())}",
            received=store_id,
        )


def _load_engines(engines: dict[str, Any], settings: QuotaSettings) -> None:
    for engine_id, engine_config in engines.items():
        if not isinstance(engine_config, dict):
            raise ConfigValidationError(
                f"Engine '{engine_id}' configuration must be a dictionary",
                field=f"engines.{engine_id}",
                expected="dict",
                received=type(engine_config).__name__,
            )

        validated = validate_engine_config(engine_config)
        _check_store(f"engines.{engine_id}", validated.store, settings)
        settings.engines[engine_id] = validated
        logger.info(
            "Engine '%s' loaded (store=%s, algorithm=%s)",
            engine_id,
            validated.store,
            validated.algorithm,
        )


def _load_buckets(buckets: dict[str, Any], settings: QuotaSettings) -> None:
    if not buckets:
        return

    validated = validate_bucket_config(buckets)
    _check_store("buckets", validated.store, settings)
    if validated.expiry_ms is None:
        logger.warning("[buckets] has no expiry_ms; the bucket backend will refuse to start")
    settings.buckets = validated


def load_config(config_path: str | Path) -> QuotaSettings:
    """Load quota-sync configuration from a TOML file.

    Example TOML:
        [stores.main]
        engine = "redis"
        url = "${REDIS_URL:-redis://localhost:6379/0}"

        [engines.api]
        store = "main"
        algorithm = "sliding_window"
        prefix = "api"
        timeout = 0.5

        [buckets]
        store = "main"
        expiry_ms = 7200000

    Args:
        config_path: Path to TOML configuration file

    Returns:
        The validated settings

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigValidationError: If configuration is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigValidationError(
            f"Failed to parse TOML file: {e}",
            field="config_file",
            expected="valid TOML",
            received=str(config_path),
        ) from e

    config = _expand_env_vars(config)

    settings = QuotaSettings()
    _load_stores(_section(config, "stores"), settings)
    _load_engines(_section(config, "engines"), settings)
    _load_buckets(_section(config, "buckets"), settings)

    logger.info(
        "Configuration loaded from %s: %d stores, %d engines, buckets=%s",
        config_path,
        len(settings.stores),
        len(settings.engines),
        "yes" if settings.buckets else "no",
    )
    return settings


def find_config() -> QuotaSettings | None:
    """Load configuration from the standard locations, if any exists.

    Searches in order:
    1. Environment variable QUOTA_SYNC_CONFIG
    2. ./quota-sync.toml
    3. ./config/quota-sync.toml

    Returns:
        The settings, or None if no file was found

    Raises:
        ConfigValidationError: If a file was found but is invalid
    """
    env_config = os.getenv(CONFIG_ENV_VAR)
    if env_config:
        config_path = Path(env_config)
        if config_path.exists():
            return load_config(config_path)
        logger.warning("%s points to non-existent file: %s", CONFIG_ENV_VAR, config_path)

    for config_path in (
        Path.cwd() / CONFIG_FILENAME,
        Path.cwd() / "config" / CONFIG_FILENAME,
    ):
        if config_path.exists():
            return load_config(config_path)

    logger.debug("No %s found in standard locations", CONFIG_FILENAME)
    return None
