"""
JSON compatibility layer for HyperMnemo.
Uses `orjson` when it is installed and the standard `json` module otherwise.
Both paths produce the same document: sorted keys, numpy arrays as lists,
datetimes as ISO 8601 strings and enums as their values.
"""
import json as std_json
from datetime import date, datetime
from enum import Enum

import numpy as np

try:
    import orjson
    ORJSON_AVAILABLE = True
except ImportError:
    ORJSON_AVAILABLE = False


def _default(obj):
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps_bytes(obj) -> bytes:
    """Serialize to UTF-8 JSON bytes with sorted keys."""
    if ORJSON_AVAILABLE:
        option = (
            orjson.OPT_SORT_KEYS | orjson.OPT_SERIALIZE_NUMPY
            | orjson.OPT_NON_STR_KEYS | orjson.OPT_PASSTHROUGH_DATETIME
        )
        return orjson.dumps(obj, option=option, default=_default)
    return std_json.dumps(
        obj, default=_default, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def dumps(obj) -> str:
    return dumps_bytes(obj).decode("utf-8")


def loads(obj):
    if ORJSON_AVAILABLE:
        return orjson.loads(obj)
    if isinstance(obj, (bytes, bytearray)):
        obj = obj.decode("utf-8")
    return std_json.loads(obj)


def round_trips(obj) -> bool:
    """True if ``obj`` comes back equal after dumps/loads (str keys, no NaN, lists not tuples)."""
    try:
        return loads(dumps_bytes(obj)) == obj
    except (TypeError, ValueError):
        return False
