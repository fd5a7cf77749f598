"""
Helpers shared by the repositories for ObjectId parsing and JSON-safe output.
"""

from bson import ObjectId, Decimal128
from datetime import datetime
from typing import Any, Dict, Optional


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a storage key; returns None for anything that is not a valid ObjectId"""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize_doc(obj: Any) -> Any:
    """Recursively serialize MongoDB objects for JSON response"""
    if isinstance(obj, ObjectId):
        return str(obj)
    elif isinstance(obj, Decimal128):
        return float(obj.to_decimal())
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, dict):
        return {k: serialize_doc(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [serialize_doc(item) for item in obj]
    else:
        return obj


def with_string_id(doc: Optional[Dict[str, Any]], key: str = "id") -> Optional[Dict[str, Any]]:
    """Copy a raw document, exposing `_id` as a string under `key`"""
    if doc is None:
        return None
    result = dict(doc)
    if "_id" in result:
        result[key] = str(result.pop("_id"))
    return result
