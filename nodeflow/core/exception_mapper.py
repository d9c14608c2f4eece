"""Exact-class exception-to-error-code mapper.

Resolves exceptions the step executor cannot classify on its own to
user-defined error codes by exact class match (``type(exc) in mapper``).
A node-level mapper is consulted before the app-wide one.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import cast

ExceptionMapper = dict[type[BaseException], str]
ERROR_CODE_RE = re.compile(r'^[A-Z][A-Z0-9_]*$')


def resolve_exception_error_code(
    exc: BaseException,
    node_mapper: Mapping[type[BaseException], str] | None,
    global_mapper: Mapping[type[BaseException], str] | None,
    default: str,
) -> str:
    """Resolve an exception to an error code.

    Resolution order: node_mapper, global_mapper, default.
    """
    for mapper in (node_mapper, global_mapper):
        if mapper:
            code = mapper.get(type(exc))
            if isinstance(code, str):
                return code
    return default


def validate_error_code_string(value: object, *, field_name: str) -> str | None:
    """Return an error message if value is not an UPPER_SNAKE_CASE code."""
    if not isinstance(value, str) or not value:
        return f'{field_name} must be a non-empty string, got {value!r}'
    if ERROR_CODE_RE.fullmatch(value) is None:
        return (
            f"{field_name} '{value}' is invalid; expected UPPER_SNAKE_CASE "
            '(e.g. RATE_LIMITED)'
        )
    return None


def validate_exception_mapper(mapper: object) -> list[str]:
    """Validate mapper entries. Returns error messages (empty = valid)."""
    if not isinstance(mapper, Mapping):
        return ['exception_mapper must be a mapping of {ExceptionClass: "ERROR_CODE"}']

    errors: list[str] = []
    for key, value in cast(Mapping[object, object], mapper).items():
        label = key.__name__ if isinstance(key, type) else repr(key)
        if not isinstance(key, type) or not issubclass(key, BaseException):
            errors.append(f'Mapper key {key!r} is not a BaseException subclass')
        value_error = validate_error_code_string(
            value, field_name=f'Mapper value for {label}'
        )
        if value_error is not None:
            errors.append(value_error)
    return errors
