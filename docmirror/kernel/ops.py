"""
docmirror Kernel: Operations

One dataclass per attribute operation:

- SetOp(value)            replace the attribute
- UnsetOp()               delete the attribute
- IncrementOp(amount)     add to a number
- AddOp(items)            append to a list
- AddUniqueOp(items)      append items not already present
- RemoveOp(items)         remove every occurrence of the items
- RelationOp(adds, removes)  add/remove members of a Relation

Each kind has three behaviours, looked up by type in the dispatch tables
below:

- apply:  previous estimated value -> new estimated value
- merge:  (this op, previous pending op on the same attribute) -> single op
- to_json: wire payload sent in a save body

`None` as a previous value means the attribute is absent.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from docmirror.kernel.encoding import array_contains_object, decode, encode, equals, unique
from docmirror.kernel.errors import InvalidMergeError, MirrorError, TypeMismatchError, UnsavedReferenceError
from docmirror.kernel.relation import Relation
from docmirror.kernel.types import ObjectRef, is_number

# ---------------------------------------------------------------------------
# Op kinds
# ---------------------------------------------------------------------------


@dataclass
class SetOp:
    value: Any

    def apply_to(self, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
        return apply_op(self, value, parent, key)

    def merge_with(self, previous: Op | None) -> Op:
        return merge_ops(self, previous)

    def to_json(self) -> Any:
        return op_to_json(self)


@dataclass
class UnsetOp:
    def apply_to(self, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
        return apply_op(self, value, parent, key)

    def merge_with(self, previous: Op | None) -> Op:
        return merge_ops(self, previous)

    def to_json(self) -> Any:
        return op_to_json(self)


@dataclass
class IncrementOp:
    amount: int | float

    def __post_init__(self) -> None:
        if not is_number(self.amount):
            raise TypeMismatchError("Increment Op must be initialized with a numeric amount.")

    def apply_to(self, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
        return apply_op(self, value, parent, key)

    def merge_with(self, previous: Op | None) -> Op:
        return merge_ops(self, previous)

    def to_json(self) -> Any:
        return op_to_json(self)


@dataclass
class AddOp:
    items: list[Any]

    def __post_init__(self) -> None:
        self.items = list(self.items) if isinstance(self.items, (list, tuple)) else [self.items]

    def apply_to(self, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
        return apply_op(self, value, parent, key)

    def merge_with(self, previous: Op | None) -> Op:
        return merge_ops(self, previous)

    def to_json(self) -> Any:
        return op_to_json(self)


@dataclass
class AddUniqueOp:
    items: list[Any]

    def __post_init__(self) -> None:
        items = list(self.items) if isinstance(self.items, (list, tuple)) else [self.items]
        self.items = unique(items)

    def apply_to(self, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
        return apply_op(self, value, parent, key)

    def merge_with(self, previous: Op | None) -> Op:
        return merge_ops(self, previous)

    def to_json(self) -> Any:
        return op_to_json(self)


@dataclass
class RemoveOp:
    items: list[Any]

    def __post_init__(self) -> None:
        items = list(self.items) if isinstance(self.items, (list, tuple)) else [self.items]
        self.items = unique(items)

    def apply_to(self, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
        return apply_op(self, value, parent, key)

    def merge_with(self, previous: Op | None) -> Op:
        return merge_ops(self, previous)

    def to_json(self) -> Any:
        return op_to_json(self)


@dataclass(init=False)
class RelationOp:
    """
    Membership changes on a Relation. Members are tracked by id only; all
    of them must belong to `target_class_name`.
    """

    relations_to_add: list[str] = field(default_factory=list)
    relations_to_remove: list[str] = field(default_factory=list)
    target_class_name: str | None = None

    def __init__(self, adds: Any = (), removes: Any = ()) -> None:
        self.target_class_name = None
        if not isinstance(adds, (list, tuple)):
            adds = [adds]
        if not isinstance(removes, (list, tuple)):
            removes = [removes]
        self.relations_to_add = unique([self._extract_id(r) for r in adds])
        self.relations_to_remove = unique([self._extract_id(r) for r in removes])

    def _extract_id(self, obj: Any) -> str:
        if isinstance(obj, str):
            return obj
        if isinstance(obj, dict) and obj.get("__type") == "Pointer":
            class_name, object_id = obj.get("className"), obj.get("objectId")
        elif isinstance(obj, ObjectRef):
            class_name, object_id = obj.class_name, obj.id
        else:
            raise TypeMismatchError("Relation members must be objects, pointers or ids.")
        if not object_id:
            raise UnsavedReferenceError("You cannot add or remove an unsaved object from a relation")
        if not self.target_class_name:
            self.target_class_name = class_name
        if self.target_class_name != class_name:
            raise TypeMismatchError(
                f"Tried to create a Relation with 2 different object types: "
                f"{self.target_class_name} and {class_name}."
            )
        return object_id

    def apply_to(self, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
        return apply_op(self, value, parent, key)

    def merge_with(self, previous: Op | None) -> Op:
        return merge_ops(self, previous)

    def to_json(self) -> Any:
        return op_to_json(self)


Op = SetOp | UnsetOp | IncrementOp | AddOp | AddUniqueOp | RemoveOp | RelationOp

OP_TYPES: tuple[type, ...] = (SetOp, UnsetOp, IncrementOp, AddOp, AddUniqueOp, RemoveOp, RelationOp)


def is_op(value: Any) -> bool:
    return isinstance(value, OP_TYPES)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


def _apply_set(op: SetOp, value: Any, parent: Any, key: str | None) -> Any:
    return op.value


def _apply_unset(op: UnsetOp, value: Any, parent: Any, key: str | None) -> Any:
    return None


def _apply_increment(op: IncrementOp, value: Any, parent: Any, key: str | None) -> Any:
    if value is None:
        return op.amount
    if not is_number(value):
        raise TypeMismatchError("Cannot increment a non-numeric value.")
    return op.amount + value


def _apply_add(op: AddOp, value: Any, parent: Any, key: str | None) -> Any:
    if value is None:
        return list(op.items)
    if isinstance(value, list):
        return value + op.items
    raise TypeMismatchError("Cannot add elements to a non-array value")


def _apply_add_unique(op: AddUniqueOp, value: Any, parent: Any, key: str | None) -> Any:
    if value is None:
        return list(op.items)
    if not isinstance(value, list):
        raise TypeMismatchError("Cannot add elements to a non-array value")
    to_add = []
    for item in op.items:
        if isinstance(item, ObjectRef):
            if not array_contains_object(value, item):
                to_add.append(item)
        elif not any(equals(existing, item) for existing in value):
            to_add.append(item)
    return value + to_add


def _apply_remove(op: RemoveOp, value: Any, parent: Any, key: str | None) -> Any:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeMismatchError("Cannot remove elements from a non-array value")
    remaining = list(value)
    for item in op.items:
        if isinstance(item, ObjectRef):
            remaining = [
                r
                for r in remaining
                if r is not item
                and not (
                    item.id
                    and isinstance(r, ObjectRef)
                    and r.class_name == item.class_name
                    and r.id == item.id
                )
            ]
        else:
            remaining = [r for r in remaining if not equals(r, item)]
    return remaining


def _apply_relation(op: RelationOp, value: Any, parent: Any, key: str | None) -> Any:
    if value is None:
        if parent is None or not key:
            raise MirrorError(
                message="Cannot apply a RelationOp without either a previous value, or an object and a key"
            )
        return Relation(parent, key, op.target_class_name)
    if isinstance(value, Relation):
        if op.target_class_name:
            if value.target_class_name:
                if op.target_class_name != value.target_class_name:
                    raise TypeMismatchError(
                        f"Related object must be a {value.target_class_name}, "
                        f"but a {op.target_class_name} was passed in."
                    )
            else:
                value.target_class_name = op.target_class_name
        return value
    raise TypeMismatchError("Relation cannot be applied to a non-relation field")


_APPLIERS: dict[type, Callable[..., Any]] = {
    SetOp: _apply_set,
    UnsetOp: _apply_unset,
    IncrementOp: _apply_increment,
    AddOp: _apply_add,
    AddUniqueOp: _apply_add_unique,
    RemoveOp: _apply_remove,
    RelationOp: _apply_relation,
}


def apply_op(op: Op, value: Any = None, parent: Any = None, key: str | None = None) -> Any:
    """Estimated value of an attribute after `op`, given its previous value."""
    applier = _APPLIERS.get(type(op))
    if applier is None:
        raise TypeError(f"Not an op: {op!r}")
    return applier(op, value, parent, key)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def _cannot_merge(name: str) -> InvalidMergeError:
    return InvalidMergeError(f"Cannot merge {name} Op with the previous Op")


def _merge_set(op: SetOp, previous: Op) -> Op:
    return op


def _merge_unset(op: UnsetOp, previous: Op) -> Op:
    return op


def _merge_increment(op: IncrementOp, previous: Op) -> Op:
    if isinstance(previous, SetOp):
        return SetOp(op.apply_to(previous.value))
    if isinstance(previous, UnsetOp):
        return SetOp(op.amount)
    if isinstance(previous, IncrementOp):
        return IncrementOp(op.amount + previous.amount)
    raise _cannot_merge("Increment")


def _merge_add(op: AddOp, previous: Op) -> Op:
    if isinstance(previous, SetOp):
        return SetOp(op.apply_to(previous.value))
    if isinstance(previous, UnsetOp):
        return SetOp(list(op.items))
    if isinstance(previous, AddOp):
        return AddOp(previous.items + op.items)
    raise _cannot_merge("Add")


def _merge_add_unique(op: AddUniqueOp, previous: Op) -> Op:
    if isinstance(previous, SetOp):
        return SetOp(op.apply_to(previous.value))
    if isinstance(previous, UnsetOp):
        return SetOp(list(op.items))
    if isinstance(previous, AddUniqueOp):
        return AddUniqueOp(op.apply_to(previous.items))
    raise _cannot_merge("AddUnique")


def _merge_remove(op: RemoveOp, previous: Op) -> Op:
    if isinstance(previous, SetOp):
        return SetOp(op.apply_to(previous.value))
    if isinstance(previous, UnsetOp):
        # Removing from a deleted field keeps it deleted.
        return previous
    if isinstance(previous, RemoveOp):
        merged = list(previous.items)
        for item in op.items:
            if isinstance(item, ObjectRef):
                if not array_contains_object(merged, item):
                    merged.append(item)
            elif not any(equals(existing, item) for existing in merged):
                merged.append(item)
        return RemoveOp(merged)
    raise _cannot_merge("Remove")


def _merge_relation(op: RelationOp, previous: Op) -> Op:
    if isinstance(previous, UnsetOp):
        raise InvalidMergeError("You cannot modify a relation after deleting it.")
    if isinstance(previous, SetOp) and isinstance(previous.value, Relation):
        return op
    if isinstance(previous, RelationOp):
        if previous.target_class_name and previous.target_class_name != op.target_class_name:
            # Id-only ops carry no class; they inherit the previous one.
            if op.target_class_name is not None:
                raise InvalidMergeError(
                    f"Related object must be of class {previous.target_class_name}, "
                    f"but {op.target_class_name} was passed in."
                )
        adds = [r for r in previous.relations_to_add if r not in op.relations_to_remove]
        adds += [r for r in op.relations_to_add if r not in adds]
        removes = [r for r in previous.relations_to_remove if r not in op.relations_to_add]
        removes += [r for r in op.relations_to_remove if r not in removes]
        merged = RelationOp(adds, removes)
        merged.target_class_name = op.target_class_name or previous.target_class_name
        return merged
    raise _cannot_merge("Relation")


_MERGERS: dict[type, Callable[[Any, Any], Op]] = {
    SetOp: _merge_set,
    UnsetOp: _merge_unset,
    IncrementOp: _merge_increment,
    AddOp: _merge_add,
    AddUniqueOp: _merge_add_unique,
    RemoveOp: _merge_remove,
    RelationOp: _merge_relation,
}


def merge_ops(op: Op, previous: Op | None) -> Op:
    """
    Collapse `op` onto the op already pending for the same attribute.
    Raises InvalidMergeError when the pair has no combined meaning.
    """
    if previous is None:
        return op
    merger = _MERGERS.get(type(op))
    if merger is None:
        raise TypeError(f"Not an op: {op!r}")
    return merger(op, previous)


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def _set_to_json(op: SetOp) -> Any:
    return encode(op.value, False, True)


def _unset_to_json(op: UnsetOp) -> Any:
    return {"__op": "Delete"}


def _increment_to_json(op: IncrementOp) -> Any:
    return {"__op": "Increment", "amount": op.amount}


def _add_to_json(op: AddOp) -> Any:
    return {"__op": "Add", "objects": encode(op.items, False, True)}


def _add_unique_to_json(op: AddUniqueOp) -> Any:
    return {"__op": "AddUnique", "objects": encode(op.items, False, True)}


def _remove_to_json(op: RemoveOp) -> Any:
    return {"__op": "Remove", "objects": encode(op.items, False, True)}


def _relation_to_json(op: RelationOp) -> Any:
    def pointers(ids: list[str]) -> list[dict[str, Any]]:
        return [{"__type": "Pointer", "className": op.target_class_name, "objectId": i} for i in ids]

    adds = {"__op": "AddRelation", "objects": pointers(op.relations_to_add)} if op.relations_to_add else None
    removes = (
        {"__op": "RemoveRelation", "objects": pointers(op.relations_to_remove)}
        if op.relations_to_remove
        else None
    )
    if adds and removes:
        return {"__op": "Batch", "ops": [adds, removes]}
    return adds or removes or {}


_SERIALIZERS: dict[type, Callable[[Any], Any]] = {
    SetOp: _set_to_json,
    UnsetOp: _unset_to_json,
    IncrementOp: _increment_to_json,
    AddOp: _add_to_json,
    AddUniqueOp: _add_unique_to_json,
    RemoveOp: _remove_to_json,
    RelationOp: _relation_to_json,
}


def op_to_json(op: Op) -> Any:
    serializer = _SERIALIZERS.get(type(op))
    if serializer is None:
        raise TypeError(f"Not an op: {op!r}")
    return serializer(op)


def op_from_json(json: Any, client: Any = None) -> Op | None:
    """
    Rebuild an op from its wire payload. Returns None for anything that is
    not a recognised `{"__op": ...}` payload.
    """
    if not isinstance(json, dict):
        return None
    kind = json.get("__op")
    if kind == "Delete":
        return UnsetOp()
    if kind == "Increment":
        return IncrementOp(json.get("amount"))
    if kind == "Add":
        return AddOp(decode(json.get("objects", []), client))
    if kind == "AddUnique":
        return AddUniqueOp(decode(json.get("objects", []), client))
    if kind == "Remove":
        return RemoveOp(decode(json.get("objects", []), client))
    if kind == "AddRelation":
        adds = json.get("objects")
        return RelationOp(adds if isinstance(adds, list) else [], [])
    if kind == "RemoveRelation":
        removes = json.get("objects")
        return RelationOp([], removes if isinstance(removes, list) else [])
    if kind == "Batch":
        adds: list[Any] = []
        removes: list[Any] = []
        for sub in json.get("ops", []):
            if sub.get("__op") == "AddRelation":
                adds.extend(sub.get("objects", []))
            elif sub.get("__op") == "RemoveRelation":
                removes.extend(sub.get("objects", []))
        return RelationOp(adds, removes)
    return None
