import json
from typing import Any
from decimal import Decimal
from datetime import datetime, date
from enum import Enum

from pydantic import BaseModel


def make_json_safe(value: Any) -> Any:
    """
    Convert event payloads and history rows into JSON-serialisable structures.
    """
    if isinstance(value, BaseModel):
        return make_json_safe(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    if isinstance(value, float) and value != value:
        # NaN is not valid JSON
        return None
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def dumps(value: Any) -> str:
    return json.dumps(make_json_safe(value))


def loads(raw: Any) -> Any:
    """Decode a JSON column; drivers may already return decoded objects."""
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    return json.loads(raw)
