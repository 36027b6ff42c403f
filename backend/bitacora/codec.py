"""JSON codec shared by the document store, the export bundle and its checksums.

Timestamps and calendar dates are written as
``{"__type": "Date", "value": "<ISO-8601>"}`` so they survive a round trip
through plain JSON. A value without a time part revives as a ``date``.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

DATE_TAG = "Date"
CHECKSUM_ALGORITHM = "sha256"


def encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {"__type": DATE_TAG, "value": value.isoformat()}
    if isinstance(value, date):
        return {"__type": DATE_TAG, "value": value.isoformat()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(key): encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    return value


def _parse_timestamp(raw: str) -> datetime:
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date_value(raw: str) -> date | datetime:
    if "T" not in raw and len(raw) == 10:
        return date.fromisoformat(raw)
    return _parse_timestamp(raw)


def _revive(obj: dict[str, Any]) -> Any:
    if obj.get("__type") == DATE_TAG and isinstance(obj.get("value"), str) and len(obj) == 2:
        return _parse_date_value(obj["value"])
    return obj


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        return _revive({key: decode_value(item) for key, item in value.items()})
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def dumps(value: Any, pretty: bool = False) -> str:
    if pretty:
        return json.dumps(encode_value(value), ensure_ascii=False, indent=2)
    return json.dumps(encode_value(value), ensure_ascii=False)


def loads(text: str | bytes) -> Any:
    return json.loads(text, object_hook=_revive)


def canonical_dumps(value: Any) -> str:
    return json.dumps(encode_value(value), ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def layer_checksum(layer: Any) -> str:
    return hashlib.sha256(canonical_dumps(layer).encode("utf-8")).hexdigest()
