"""
docmirror Kernel: State Mutations

Pure functions over the pieces of a State record. The state stores call
these with the containers of one object; nothing here knows how states are
keyed.

Each function computes everything it needs before writing, so an op that
fails to merge or apply leaves the containers untouched.
"""

from __future__ import annotations

import json
from typing import Any

from docmirror.kernel.encoding import encode
from docmirror.kernel.files import RemoteFile
from docmirror.kernel.ops import Op, RelationOp
from docmirror.kernel.relation import Relation
from docmirror.kernel.types import AttributeMap, ObjectCache, ObjectRef, OpsMap

# ---------------------------------------------------------------------------
# Server data
# ---------------------------------------------------------------------------


def set_server_data(server_data: AttributeMap, attributes: AttributeMap) -> None:
    """Overwrite confirmed values. A None value removes the attribute."""
    for attr, value in attributes.items():
        if value is None:
            server_data.pop(attr, None)
        else:
            server_data[attr] = value


def fingerprint(value: Any) -> str:
    """Canonical JSON of a value, compared later to detect in-place edits."""
    return json.dumps(encode(value, False, True), sort_keys=True, default=str)


def is_tracked_value(value: Any) -> bool:
    """Mutable containers whose contents can change without a set() call."""
    if value is None or isinstance(value, (str, int, float, bool, ObjectRef, RemoteFile, Relation)):
        return False
    return isinstance(value, (dict, list)) or hasattr(value, "to_json")


def _list_index(items: list[Any], key: str) -> int | None:
    if key.isdigit() and int(key) <= len(items):
        return int(key)
    return None


def _get_field(container: Any, key: str) -> Any:
    if isinstance(container, list):
        index = _list_index(container, key)
        return container[index] if index is not None and index < len(container) else None
    return container.get(key)


def _put_field(container: Any, key: str, value: Any) -> None:
    """Write one step of a dotted path. None removes a dict key and blanks a list slot."""
    if isinstance(container, list):
        index = _list_index(container, key)
        if index is None:
            return
        if index == len(container):
            container.append(value)
        else:
            container[index] = value
    elif value is None:
        container.pop(key, None)
    else:
        container[key] = value


def _nested_set(data: AttributeMap, path: str, value: Any) -> None:
    fields = path.split(".")
    target = data
    for key in fields[:-1]:
        child = _get_field(target, key)
        if not isinstance(child, (dict, list)):
            child = {}
            _put_field(target, key, child)
        target = child
    _put_field(target, fields[-1], value)


def commit_server_changes(server_data: AttributeMap, object_cache: ObjectCache, changes: AttributeMap) -> None:
    """
    Apply a server response to confirmed data. Dotted keys write nested
    values; containers get a fresh fingerprint in the object cache, and so
    does the top-level container a dotted key wrote into.
    """
    fingerprints = {attr: fingerprint(val) for attr, val in changes.items() if is_tracked_value(val)}
    for attr, val in changes.items():
        _nested_set(server_data, attr, val)
        if attr in fingerprints:
            object_cache[attr] = fingerprints[attr]
        elif val is None:
            object_cache.pop(attr, None)
    for root in {attr.split(".")[0] for attr in changes if "." in attr}:
        if is_tracked_value(server_data.get(root)):
            object_cache[root] = fingerprint(server_data[root])


# ---------------------------------------------------------------------------
# Pending op batches
# ---------------------------------------------------------------------------


def set_pending_op(pending_ops: list[OpsMap], attr: str, op: Op | None) -> None:
    """Record `op` for `attr` in the current (last) batch; None clears it."""
    last = pending_ops[-1]
    if op is not None:
        last[attr] = op
    else:
        last.pop(attr, None)


def push_pending_state(pending_ops: list[OpsMap]) -> None:
    """Freeze the current batch and open a new one for later edits."""
    pending_ops.append({})


def pop_pending_state(pending_ops: list[OpsMap]) -> OpsMap:
    """Remove and return the oldest batch. Leaves at least one empty batch."""
    first = pending_ops.pop(0)
    if not pending_ops:
        pending_ops.append({})
    return first


def merge_first_pending_state(pending_ops: list[OpsMap]) -> None:
    """
    Fold the oldest batch into the next one, as if the edits had been made
    in a single batch. Used when a save fails.
    """
    if len(pending_ops) < 2:
        return
    first, after = pending_ops[0], pending_ops[1]
    merged = dict(after)
    for attr, op in first.items():
        if attr in after:
            merged[attr] = after[attr].merge_with(op)
        else:
            merged[attr] = op
    pending_ops.pop(0)
    pending_ops[0] = merged


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------


def estimate_attribute(server_data: AttributeMap, pending_ops: list[OpsMap], identity: Any, attr: str) -> Any:
    """Confirmed value of `attr` folded through every pending batch."""
    value = server_data.get(attr)
    for batch in pending_ops:
        op = batch.get(attr)
        if op is None:
            continue
        if isinstance(op, RelationOp):
            if identity.id:
                value = op.apply_to(value, identity, attr)
        else:
            value = op.apply_to(value)
    return value


def estimate_attributes(server_data: AttributeMap, pending_ops: list[OpsMap], identity: Any) -> AttributeMap:
    """Estimated values of every attribute. Absent attributes are left out."""
    data = dict(server_data)
    for batch in pending_ops:
        for attr, op in batch.items():
            if isinstance(op, RelationOp):
                if identity.id:
                    data[attr] = op.apply_to(data.get(attr), identity, attr)
            elif "." in attr:
                fields = attr.split(".")
                target = data
                for key in fields[:-1]:
                    child = _get_field(target, key)
                    # Copy on the way down so server data is never mutated.
                    if isinstance(child, dict):
                        child = dict(child)
                    elif isinstance(child, list):
                        child = list(child)
                    else:
                        child = {}
                    _put_field(target, key, child)
                    target = child
                _put_field(target, fields[-1], op.apply_to(_get_field(target, fields[-1])))
            else:
                data[attr] = op.apply_to(data.get(attr))
    return {k: v for k, v in data.items() if v is not None}
