from __future__ import annotations

import json
from collections.abc import Mapping, Set
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, Set):
        return sorted(value, key=str)
    if isinstance(value, Mapping):
        # Maps keyed by non-string values still serialize, keyed by their str().
        return {str(key): item for key, item in value.items()}
    return str(value)


def encode_blob(value: Any, *, indent: int | None = None) -> str:
    """Serialize an agent result or context snapshot into JSON text."""
    return json.dumps(value, default=_json_default, indent=indent)


def decode_blob(value: Any) -> Any:
    """Decode a stored JSON blob (text, bytes or an already-decoded jsonb value)."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    if isinstance(value, Mapping):
        return dict(value)
    return value
