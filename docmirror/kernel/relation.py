"""
docmirror Kernel: Relation values

A Relation is the many-to-many attribute type. The value itself holds no
members locally; it only knows its parent object, its key on that parent,
and the class of the objects it relates to. Membership changes are recorded
as RelationOp pending ops on the parent.
"""

from __future__ import annotations

from typing import Any

from docmirror.kernel.errors import MirrorError
from docmirror.kernel.types import ObjectRef


class Relation:
    """Relation attribute of `parent` under `key`."""

    def __init__(
        self,
        parent: Any = None,
        key: str | None = None,
        target_class_name: str | None = None,
    ) -> None:
        self.parent = parent
        self.key = key
        self.target_class_name = target_class_name

    def __repr__(self) -> str:
        return f"Relation(key={self.key!r}, target_class_name={self.target_class_name!r})"

    def _ensure_parent_and_key(self, parent: ObjectRef, key: str) -> None:
        """Bind the relation to the handle it was read from."""
        self.key = self.key or key
        if self.key != key:
            raise MirrorError(message="Internal Error. Relation retrieved from two different keys.")
        if self.parent is not None:
            if self.parent.class_name != parent.class_name:
                raise MirrorError(message="Internal Error. Relation retrieved from two different Objects.")
            if self.parent.id:
                if self.parent.id != parent.id:
                    raise MirrorError(message="Internal Error. Relation retrieved from two different Objects.")
                if not isinstance(self.parent, ObjectRef):
                    # Estimated under single-instance mode, the parent is only an identity.
                    self.parent = parent
            elif parent.id:
                self.parent = parent
        else:
            self.parent = parent

    def add(self, objects: Any) -> Any:
        """Add one object or a list of objects (or ids). Returns the parent."""
        from docmirror.kernel.ops import RelationOp

        if not isinstance(objects, list):
            objects = [objects]
        change = RelationOp(objects, [])
        if self.parent is None:
            raise MirrorError(message="Cannot add to a Relation without a parent")
        if not objects:
            return self.parent
        self.parent.set(self.key, change)
        self.target_class_name = change.target_class_name
        return self.parent

    def remove(self, objects: Any) -> None:
        """Remove one object or a list of objects (or ids)."""
        from docmirror.kernel.ops import RelationOp

        if not isinstance(objects, list):
            objects = [objects]
        change = RelationOp([], objects)
        if self.parent is None:
            raise MirrorError(message="Cannot remove from a Relation without a parent")
        if not objects:
            return
        self.parent.set(self.key, change)
        self.target_class_name = change.target_class_name

    def to_json(self) -> dict[str, Any]:
        return {"__type": "Relation", "className": self.target_class_name}
