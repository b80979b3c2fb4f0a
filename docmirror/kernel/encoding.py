"""
docmirror Kernel: Wire Encoding

encode() turns attribute values into the backend's JSON shapes; decode()
goes the other way. Object references are written as pointers unless the
caller asks for full nested objects, dates as `{"__type": "Date"}`,
files/ACLs/relations/ops through their own to_json().

Also home to the comparison helpers the ops need: deep `equals`, `unique`
and `array_contains_object`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from docmirror.kernel.errors import ErrorCode, MirrorError
from docmirror.kernel.files import RemoteFile
from docmirror.kernel.types import ObjectRef, format_date, parse_date


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def encode(
    value: Any,
    disallow_objects: bool = False,
    force_pointers: bool = False,
    seen: list[Any] | None = None,
) -> Any:
    """
    JSON-ready form of `value`.

    An object reference becomes a full `{"__type": "Object"}` dict only when
    it is clean, has fetched data, has not been seen on the current path and
    `force_pointers` is off. Everything else becomes a pointer.
    """
    return _encode(value, disallow_objects, force_pointers, seen if seen is not None else [])


def _encode(value: Any, disallow_objects: bool, force_pointers: bool, seen: list[Any]) -> Any:
    if isinstance(value, ObjectRef):
        if disallow_objects:
            raise MirrorError(ErrorCode.INVALID_POINTER, "Objects not allowed here")
        seen_entry = f"{value.class_name}:{value.id}" if value.id else value
        if (
            force_pointers
            or any(s is seen_entry or s == seen_entry for s in seen)
            or value.dirty()
            or not value._get_server_data()
        ):
            return value.to_pointer()
        return value._to_full_json(seen + [seen_entry])
    if isinstance(value, RemoteFile):
        if not value.url:
            raise MirrorError(ErrorCode.UNSAVED_FILE_ERROR, "Tried to encode an unsaved file.")
        return value.to_json()
    if isinstance(value, datetime):
        return {"__type": "Date", "iso": format_date(value)}
    if isinstance(value, (list, tuple)):
        return [_encode(v, disallow_objects, force_pointers, seen) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v, disallow_objects, force_pointers, seen) for k, v in value.items()}
    if hasattr(value, "to_json"):
        return value.to_json()
    return value


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def decode(value: Any, client: Any = None) -> Any:
    """
    Python values for a JSON payload. Pointers and nested objects are only
    materialized into handles when a client is given.
    """
    if isinstance(value, list):
        return [decode(v, client) for v in value]
    if not isinstance(value, dict):
        return value
    if isinstance(value.get("__op"), str):
        from docmirror.kernel.ops import op_from_json

        return op_from_json(value, client)
    kind = value.get("__type")
    if kind in ("Pointer", "Object") and value.get("className") and client is not None:
        return client.object_from_json(value)
    if kind == "Relation":
        from docmirror.kernel.relation import Relation

        return Relation(None, None, value.get("className"))
    if kind == "Date":
        return parse_date(value["iso"])
    if kind == "File":
        return RemoteFile.from_json(value, client)
    return {k: decode(v, client) for k, v in value.items()}


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def equals(a: Any, b: Any) -> bool:
    """Deep value equality across plain JSON values and SDK types."""
    if isinstance(a, datetime) or isinstance(b, datetime):
        return isinstance(a, datetime) and isinstance(b, datetime) and a == b
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (list, tuple)) or isinstance(b, (list, tuple)):
        if not isinstance(a, (list, tuple)) or not isinstance(b, (list, tuple)) or len(a) != len(b):
            return False
        return all(equals(x, y) for x, y in zip(a, b))
    if hasattr(a, "equals"):
        return a.equals(b)
    if isinstance(b, ObjectRef) and isinstance(a, dict):
        if a.get("__type") in ("Object", "Pointer"):
            return a.get("objectId") == b.id and a.get("className") == b.class_name
        return False
    if isinstance(a, dict):
        if not isinstance(b, dict) or a.keys() != b.keys():
            return False
        return all(equals(a[k], b[k]) for k in a)
    return a == b


def array_contains_object(array: list[Any], obj: ObjectRef) -> bool:
    """True if an entry of `array` references the same (class, id) as `obj`."""
    obj_id = obj._get_id()
    return any(
        isinstance(item, ObjectRef) and item.class_name == obj.class_name and item._get_id() == obj_id
        for item in array
    )


def unique(items: list[Any]) -> list[Any]:
    """Order-preserving dedup; object references compare by (class, id)."""
    uniques: list[Any] = []
    for item in items:
        if isinstance(item, ObjectRef):
            if not array_contains_object(uniques, item):
                uniques.append(item)
        elif not any(equals(existing, item) for existing in uniques):
            uniques.append(item)
    return uniques
