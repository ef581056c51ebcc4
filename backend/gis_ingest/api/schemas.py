"""Response shaping helpers for the routers."""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import Any


def to_response(record: Any) -> dict[str, Any]:
    """Convert a dataclass record into a JSON-ready dictionary.

    Timestamps become ISO 8601 strings and enums their values.
    """
    result = dataclasses.asdict(record)
    for key, value in result.items():
        if isinstance(value, datetime.datetime):
            result[key] = value.isoformat()
        elif isinstance(value, enum.Enum):
            result[key] = value.value
    return result


def error_body(message: str) -> dict[str, Any]:
    return {"ok": False, "error": message}
