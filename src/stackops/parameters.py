"""Parameter reconciliation for stack create and update.

For an update the caller never has to know the full parameter set:

1. Keys in both the template and the deployed stack continue with their
   previous value.
2. Keys new in this template revision get their configured default.
3. Volatile parameters are read from live state and win over 1 and 2,
   because they track values changed outside of this tool.
4. Explicit overrides win over everything.
5. Entries with no value are dropped.

A parameter set is either entirely well-formed or not built at all;
ParameterError is raised before anything is sent to the engine.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Union


class ParameterError(Exception):
    """Raised when a parameter set cannot be built."""

    pass


class UsePreviousValue:
    """Sentinel meaning "keep the value currently deployed"."""

    _instance: UsePreviousValue | None = None

    def __new__(cls) -> UsePreviousValue:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "USE_PREVIOUS_VALUE"

    def __copy__(self) -> UsePreviousValue:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> UsePreviousValue:
        return self


USE_PREVIOUS_VALUE = UsePreviousValue()

ParameterValue = Union[str, UsePreviousValue]
ParameterSet = dict[str, ParameterValue]

# Returns parameter name -> value read from live state
VolatileResolver = Callable[[], Mapping[str, Any]]

VALID_PARAMETER_KEY_PATTERN = r"^[A-Za-z0-9]{1,255}$"


def _format_value(key: str, value: Any) -> ParameterValue:
    if value is USE_PREVIOUS_VALUE:
        return USE_PREVIOUS_VALUE
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ",".join(str(_format_value(key, item)) for item in value)
    raise ParameterError(
        f"Parameter '{key}' has a value of unsupported type {type(value).__name__}"
    )


def _finalize(parameters: Mapping[str, Any]) -> ParameterSet:
    """Drop None entries, validate keys and stringify values."""
    errors: list[str] = []
    result: ParameterSet = {}

    for key, value in parameters.items():
        if value is None:
            continue
        if not isinstance(key, str) or not re.match(VALID_PARAMETER_KEY_PATTERN, key):
            errors.append(f"invalid parameter key {key!r}")
            continue
        try:
            result[key] = _format_value(key, value)
        except ParameterError as e:
            errors.append(str(e))

    if errors:
        raise ParameterError("Cannot build parameter set: " + "; ".join(errors))

    return result


def resolve_for_create(
    defaults: Mapping[str, Any],
    overrides: Mapping[str, Any] | None = None,
) -> ParameterSet:
    """Merge defaults with overrides (overrides win) and drop None values."""
    merged: dict[str, Any] = dict(defaults)
    merged.update(overrides or {})

    if any(value is USE_PREVIOUS_VALUE for value in merged.values()):
        raise ParameterError("A new stack has no previous parameter values to use")

    return _finalize(merged)


def resolve_for_update(
    template_keys: Iterable[str],
    deployed_keys: Iterable[str],
    defaults: Mapping[str, Any],
    volatile_resolver: VolatileResolver | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ParameterSet:
    """Compute the parameter set for an update of a deployed stack.

    Args:
        template_keys: Parameter names in the template being applied.
        deployed_keys: Parameter names currently on the deployed stack.
        defaults: Configured default values.
        volatile_resolver: Reads parameters that must track live state.
        overrides: Caller intent for this invocation.

    Returns:
        Mapping of parameter name to value or USE_PREVIOUS_VALUE.

    Raises:
        ParameterError: If any entry is malformed.
    """
    deployed = set(deployed_keys)
    parameters: dict[str, Any] = {}

    for key in template_keys:
        if key in deployed:
            parameters[key] = USE_PREVIOUS_VALUE
        else:
            parameters[key] = defaults.get(key)

    if volatile_resolver is not None:
        parameters.update(volatile_resolver())

    parameters.update(overrides or {})

    return _finalize(parameters)


def format_as_stack_parameters(parameters: Mapping[str, ParameterValue]) -> list[dict[str, Any]]:
    """Convert a parameter set into the engine's Parameters payload."""
    formatted: list[dict[str, Any]] = []
    for key, value in parameters.items():
        if value is USE_PREVIOUS_VALUE:
            formatted.append({"ParameterKey": key, "UsePreviousValue": True})
        else:
            formatted.append({"ParameterKey": key, "ParameterValue": str(value)})
    return formatted


def explicit_keys(parameters: Mapping[str, ParameterValue]) -> list[str]:
    """Keys that carry a literal value rather than the previous one."""
    return [key for key, value in parameters.items() if value is not USE_PREVIOUS_VALUE]
