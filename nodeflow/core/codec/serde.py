# nodeflow/core/codec/serde.py
from __future__ import annotations

import dataclasses
import datetime as dt
import json
import traceback as tb
from enum import Enum
from typing import Any, Dict, List, Union

from pydantic import BaseModel

from nodeflow.core.logging import get_logger

logger = get_logger('serde')


Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be serialized to or parsed from JSON.
    """

    pass


def exception_to_json(ex: BaseException, *, with_traceback: bool = False) -> Dict[str, Json]:
    """
    Convert a BaseException to a JSON-serializable dictionary.

    Returns:
        A dict with "type" and "message", plus "traceback" when requested.
    """
    data: Dict[str, Json] = {'type': type(ex).__name__, 'message': str(ex)}
    if with_traceback:
        data['traceback'] = ''.join(
            tb.format_exception(type(ex), ex, ex.__traceback__)
        )
    return data


def to_jsonable(value: Any) -> Json:
    """
    Convert a value into plain JSON types.

    Handles datetimes/dates (ISO 8601), enums (their value), pydantic models,
    dataclass instances, sets/tuples (as lists) and exceptions.
    """
    match value:
        case None | bool() | int() | float() | str():
            return value
        case Enum():
            return to_jsonable(value.value)
        case dt.datetime() | dt.date():
            return value.isoformat()
        case BaseModel():
            return value.model_dump(mode='json')
        case BaseException():
            return exception_to_json(value)
        case dict():
            return {str(k): to_jsonable(v) for k, v in value.items()}
        case list() | tuple() | set() | frozenset():
            return [to_jsonable(v) for v in value]
        case _ if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return {
                f.name: to_jsonable(getattr(value, f.name))
                for f in dataclasses.fields(value)
            }
        case _:
            raise SerializationError(
                f'Cannot serialize value of type {type(value).__name__}'
            )


def dumps_json(value: Any) -> str:
    """
    Serialize a value to a compact JSON string.

    Raises:
        SerializationError: if the value contains unsupported types.
    """
    try:
        return json.dumps(to_jsonable(value), separators=(',', ':'), allow_nan=False)
    except ValueError as exc:
        raise SerializationError(str(exc)) from exc


def loads_json(text: str | bytes | None) -> Json:
    """
    Parse a JSON string. None and empty strings parse to None.

    Raises:
        SerializationError: if the text is not valid JSON.
    """
    if text is None or text == '' or text == b'':
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error(f'Failed to parse JSON payload: {exc}')
        raise SerializationError(f'Invalid JSON: {exc}') from exc


def loads_json_object(text: str | bytes | None) -> Dict[str, Json]:
    """Parse a JSON object, treating an absent payload as an empty object."""
    parsed = loads_json(text)
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise SerializationError(
            f'Expected a JSON object, got {type(parsed).__name__}'
        )
    return parsed


def parse_datetime(value: Any) -> dt.datetime | None:
    """Parse an ISO 8601 string (or pass through a datetime), normalized to UTC."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = dt.datetime.fromisoformat(value)
        except ValueError as exc:
            raise SerializationError(f'Invalid datetime: {value!r}') from exc
    else:
        raise SerializationError(f'Invalid datetime: {value!r}')
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)
