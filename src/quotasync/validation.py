"""
Centralized validation for quota-sync configurations.

This module validates raw configuration dictionaries against the dataclass
schemas in ``quotasync.schemas`` and returns the corresponding instances.
"""

from dataclasses import MISSING, fields, is_dataclass
from typing import Any, Literal, get_args, get_origin, get_type_hints

from quotasync.exceptions import ConfigValidationError
from quotasync.schemas import STORE_SCHEMAS, BucketBackendConfig, EngineConfig


def _get_type_name(type_hint: Any) -> str:
    """Get a human-readable name for a type hint."""
    origin = get_origin(type_hint)

    if origin is None:
        if hasattr(type_hint, "__name__"):
            return type_hint.__name__
        return str(type_hint)

    if origin is Literal:
        return f"Literal{get_args(type_hint)}"

    # Union types (e.g., str | None)
    args = get_args(type_hint)
    type_names = [_get_type_name(arg) for arg in args if arg is not type(None)]
    suffix = " | None" if type(None) in args else ""
    return " | ".join(type_names) + suffix


def _matches(value: Any, expected: Any) -> bool:
    """Return True if ``value`` is an instance of the plain type ``expected``."""
    if expected is float:
        # Integers are accepted wherever a float is expected
        return isinstance(value, int | float) and not isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    try:
        return isinstance(value, expected)
    except TypeError:
        return True


def _validate_type(value: Any, expected_type: Any, field_name: str) -> None:
    """Validate that a value matches the expected type."""
    origin = get_origin(expected_type)
    args = get_args(expected_type)

    if value is None:
        if type(None) in args:
            return
        raise ConfigValidationError(
            f"Field '{field_name}' cannot be None",
            field=field_name,
            expected=_get_type_name(expected_type),
            received="None",
        )

    if origin is Literal:
        if value not in args:
            raise ConfigValidationError(
                f"Field '{field_name}' must be one of {args}",
                field=field_name,
                expected=f"Literal{args}",
                received=repr(value),
            )
        return

    if args:
        # Union: any member may match
        for arg in args:
            if arg is type(None):
                continue
            if get_origin(arg) is Literal:
                if value in get_args(arg):
                    return
            elif _matches(value, arg):
                return
        raise ConfigValidationError(
            f"Field '{field_name}' has incorrect type",
            field=field_name,
            expected=_get_type_name(expected_type),
            received=type(value).__name__,
        )

    if not _matches(value, expected_type):
        raise ConfigValidationError(
            f"Field '{field_name}' has incorrect type",
            field=field_name,
            expected=_get_type_name(expected_type),
            received=type(value).__name__,
        )


def _build(config_class: type, params: dict[str, Any], section: str) -> Any:
    """Check required fields and types, then instantiate ``config_class``."""
    if not is_dataclass(config_class):
        raise ConfigValidationError(
            f"Config class for '{section}' is not a dataclass",
            field=section,
            expected="dataclass",
            received=str(type(config_class)),
        )

    hints = get_type_hints(config_class)
    config_fields = {f.name: f for f in fields(config_class)}

    for field_name, field_obj in config_fields.items():
        has_default = field_obj.default is not MISSING or field_obj.default_factory is not MISSING
        if not has_default and field_name not in params:
            raise ConfigValidationError(
                f"Missing required field '{field_name}' in {section}",
                field=f"{section}.{field_name}",
                expected="required",
                received="missing",
            )

    for field_name, value in params.items():
        if field_name not in config_fields:
            raise ConfigValidationError(
                f"Unknown field '{field_name}' in {section}",
                field=f"{section}.{field_name}",
                expected=", ".join(config_fields),
                received=field_name,
            )
        _validate_type(value, hints[field_name], f"{section}.{field_name}")

    try:
        return config_class(**params)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(
            f"Invalid {section} configuration: {e}",
            field=section,
            expected="valid parameters",
            received=str(params),
        ) from e


def validate_store_config(engine: str, params: dict[str, Any]) -> Any:
    """Validate store configuration parameters and return config dataclass instance.

    Args:
        engine: Store engine name (e.g., "redis")
        params: Configuration parameters, ``engine`` included or not

    Returns:
        Config dataclass instance for the engine

    Raises:
        ConfigValidationError: If engine is unknown or parameters are invalid
    """
    if engine not in STORE_SCHEMAS:
        available = ", ".join(STORE_SCHEMAS.keys())
        raise ConfigValidationError(
            f"Unknown engine '{engine}'. Available engines: {available}",
            field="engine",
            expected=available,
            received=engine,
        )

    return _build(STORE_SCHEMAS[engine], {**params, "engine": engine}, "store")


def validate_engine_config(config: dict[str, Any]) -> EngineConfig:
    """Validate an ``[engines.*]`` table and return an EngineConfig.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    return _build(EngineConfig, config, "engine")


def validate_bucket_config(config: dict[str, Any]) -> BucketBackendConfig:
    """Validate the ``[buckets]`` table and return a BucketBackendConfig.

    ``expiry_ms`` may be absent here; the backend refuses to start without it.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    return _build(BucketBackendConfig, config, "buckets")
