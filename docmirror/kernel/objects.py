"""
docmirror Kernel: Remote Objects

RemoteObject is the handle application code works with. It holds no
attribute data itself: everything lives in the State record the client's
active store keeps for the handle's identity.

- Reads (`get`, `attributes`, `dirty`) estimate from server data plus
  pending op batches.
- Writes (`set` and the typed mutators) turn values into ops and merge them
  into the current batch.
- `save`, `fetch` and `destroy` go through the client's ObjectController;
  saves and destroys are serialized on the object's task queue.

Identity: under single-instance mode the identity is
ObjectIdentity(class_name, id or local id), shared by every handle for the
same record. Under unique-instance mode the identity is the handle itself.
"""

from __future__ import annotations

import asyncio
import html
import logging
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from docmirror.kernel.acl import ACL
from docmirror.kernel.encoding import decode, encode
from docmirror.kernel.errors import ErrorCode, MirrorError, TypeMismatchError, UnsavedReferenceError
from docmirror.kernel.mutations import fingerprint, is_tracked_value
from docmirror.kernel.ops import (
    AddOp,
    AddUniqueOp,
    IncrementOp,
    Op,
    RelationOp,
    RemoveOp,
    SetOp,
    UnsetOp,
    is_op,
    op_from_json,
)
from docmirror.kernel.relation import Relation
from docmirror.kernel.types import (
    SERVER_TIMESTAMPS,
    AttributeMap,
    ObjectIdentity,
    ObjectRef,
    OpsMap,
    RequestOptions,
    SaveParams,
    format_date,
    is_number,
    is_valid_key,
    new_local_id,
    parse_date,
)
from docmirror.kernel.unsaved import unsaved_children

if TYPE_CHECKING:
    from docmirror.kernel.state_store import StateStore

logger = logging.getLogger(__name__)


class RemoteObject(ObjectRef):
    """
    A record of `class_name` on the backend.

    Subclasses may set `class_name` as a class attribute and register
    themselves with MirrorClient.register_subclass so decoded objects of
    that class come back as the subclass.
    """

    class_name: str | None = None

    def __init__(
        self,
        class_name: str | dict[str, Any] | None = None,
        attributes: AttributeMap | None = None,
        *,
        client: Any,
        ignore_validation: bool = False,
    ) -> None:
        if isinstance(class_name, dict):
            attributes = {k: v for k, v in class_name.items() if k != "className"}
            class_name = class_name.get("className")
        self.class_name = class_name or type(self).class_name
        if not self.class_name:
            raise MirrorError(ErrorCode.INVALID_CLASS_NAME, "Objects must have a class name.")
        self.id: str | None = None
        self._local_id: str | None = None
        self._state_slot: Any = None
        self._client = client
        if attributes:
            self.set(attributes, ignore_validation=ignore_validation)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.class_name!r}, id={self.id!r})"

    @classmethod
    def read_only_attributes(cls) -> tuple[str, ...]:
        """Attributes `set` refuses to change. Subclasses override."""
        return ()

    # -----------------------------------------------------------------------
    # Identity and state access
    # -----------------------------------------------------------------------

    @property
    def _store(self) -> StateStore:
        return self._client.state

    def _get_id(self) -> str:
        """Server id, or a stable local id until the first save."""
        if isinstance(self.id, str):
            return self.id
        if self._local_id is None:
            self._local_id = new_local_id()
        return self._local_id

    def _state_identifier(self) -> Any:
        if self._client.single_instance:
            return ObjectIdentity(self.class_name, self.id or self._get_id())
        return self

    def _get_server_data(self) -> AttributeMap:
        return self._store.get_server_data(self._state_identifier())

    def _clear_server_data(self) -> None:
        unset = dict.fromkeys(self._get_server_data())
        self._store.set_server_data(self._state_identifier(), unset)

    def _get_pending_ops(self) -> list[OpsMap]:
        return self._store.get_pending_ops(self._state_identifier())

    def _clear_pending_ops(self, keys: list[str] | None = None) -> None:
        latest = self._get_pending_ops()[-1]
        for key in list(keys if keys is not None else latest):
            latest.pop(key, None)

    def _set_existed(self, existed: bool) -> None:
        state = self._store.get_state(self._state_identifier())
        if state is not None:
            state.existed = existed

    def _migrate_id(self, server_id: str | None) -> None:
        """Move the handle from its local id to the id the server assigned."""
        if not (self._local_id and server_id):
            return
        if self._client.single_instance:
            old_state = self._store.remove_state(self._state_identifier())
            self.id = server_id
            self._local_id = None
            if old_state is not None:
                self._store.initialize_state(self._state_identifier(), old_state)
        else:
            self.id = server_id
            self._local_id = None
        logger.debug("objects: migrated %s to server id %s", self.class_name, server_id)

    # -----------------------------------------------------------------------
    # Reading
    # -----------------------------------------------------------------------

    @property
    def attributes(self) -> MappingProxyType:
        """Read-only view of the estimated attributes."""
        return MappingProxyType(self._store.estimate_attributes(self._state_identifier()))

    @property
    def created_at(self) -> datetime | None:
        return self._get_server_data().get("createdAt")

    @property
    def updated_at(self) -> datetime | None:
        return self._get_server_data().get("updatedAt")

    def get(self, attr: str) -> Any:
        value = self.attributes.get(attr)
        if isinstance(value, Relation):
            value._ensure_parent_and_key(self, attr)
        return value

    def has(self, attr: str) -> bool:
        return self.attributes.get(attr) is not None

    def escape(self, attr: str) -> str:
        """HTML-escaped string form of an attribute; empty when absent."""
        value = self.attributes.get(attr)
        if value is None:
            return ""
        return html.escape(value if isinstance(value, str) else str(value))

    def relation(self, attr: str) -> Relation:
        value = self.get(attr)
        if value is not None:
            if not isinstance(value, Relation):
                raise TypeMismatchError(f"Called relation() on non-relation field {attr}")
            return value
        return Relation(self, attr)

    def op(self, attr: str) -> Op | None:
        """Most recent pending op on `attr`, if any."""
        for batch in reversed(self._get_pending_ops()):
            if attr in batch:
                return batch[attr]
        return None

    def get_acl(self) -> ACL | None:
        acl = self.get("ACL")
        return acl if isinstance(acl, ACL) else None

    def is_new(self) -> bool:
        return not self.id

    def existed(self) -> bool:
        if not self.id:
            return False
        state = self._store.get_state(self._state_identifier())
        return state.existed if state is not None else False

    def is_data_available(self) -> bool:
        return bool(self._get_server_data())

    def equals(self, other: Any) -> bool:
        if self is other:
            return True
        return (
            isinstance(other, RemoteObject)
            and self.class_name == other.class_name
            and self.id == other.id
            and self.id is not None
        )

    # -----------------------------------------------------------------------
    # Dirty tracking
    # -----------------------------------------------------------------------

    def _get_dirty_object_attributes(self) -> AttributeMap:
        """Containers whose contents changed in place since the last commit."""
        object_cache = self._store.get_object_cache(self._state_identifier())
        dirty = {}
        for attr, value in self.attributes.items():
            if not is_tracked_value(value):
                continue
            try:
                current = fingerprint(value)
            except MirrorError:
                # e.g. an unsaved object pushed into a list in place
                dirty[attr] = value
                continue
            if object_cache.get(attr) != current:
                dirty[attr] = value
        return dirty

    def dirty(self, attr: str | None = None) -> bool:
        if not self.id:
            return True
        pending = self._get_pending_ops()
        dirty_objects = self._get_dirty_object_attributes()
        if attr:
            return attr in dirty_objects or any(attr in batch for batch in pending)
        return any(pending) or bool(dirty_objects)

    def dirty_keys(self) -> list[str]:
        keys: dict[str, None] = {}
        for batch in self._get_pending_ops():
            keys.update(dict.fromkeys(batch))
        keys.update(dict.fromkeys(self._get_dirty_object_attributes()))
        return list(keys)

    # -----------------------------------------------------------------------
    # Writing
    # -----------------------------------------------------------------------

    def validate(self, attrs: AttributeMap) -> MirrorError | None:
        """Return the first problem with `attrs`, or None. Subclasses extend."""
        if "ACL" in attrs and not isinstance(attrs["ACL"], ACL):
            return MirrorError(ErrorCode.OTHER_CAUSE, "ACL must be an ACL.")
        for key in attrs:
            if not is_valid_key(key):
                return MirrorError(ErrorCode.INVALID_KEY_NAME, f"Invalid key name: {key}")
        return None

    def is_valid(self) -> bool:
        return self.validate(dict(self.attributes)) is None

    def _op_for(self, key: str, value: Any, unset: bool) -> Op | None:
        if unset:
            return UnsetOp()
        if is_op(value):
            return value
        if isinstance(value, dict) and isinstance(value.get("__op"), str):
            return op_from_json(value, self._client) or SetOp(value)
        if key == "ACL" and isinstance(value, dict):
            return SetOp(ACL(value))
        if isinstance(value, Relation):
            return SetOp(Relation(self, key, value.target_class_name))
        return SetOp(value)

    def set(
        self,
        key: str | AttributeMap,
        value: Any = None,
        *,
        unset: bool = False,
        ignore_validation: bool = False,
    ) -> RemoteObject:
        """
        Record local changes as pending ops. Accepts one key and value, or a
        dict of them. Raises before touching state if any change is invalid
        or cannot merge with what is already pending.
        """
        if isinstance(key, dict):
            changes = key
        elif isinstance(key, str):
            changes = {key: value}
        else:
            return self

        readonly = self.read_only_attributes()
        new_ops: OpsMap = {}
        for k, v in changes.items():
            if k in SERVER_TIMESTAMPS:
                continue
            if k in readonly:
                raise MirrorError(ErrorCode.OPERATION_FORBIDDEN, f"Cannot modify readonly attribute: {k}")
            if k in ("objectId", "id") and not unset and not is_op(v):
                if isinstance(v, str):
                    self.id = v
                continue
            new_ops[k] = self._op_for(k, v, unset)

        # Nested fields are only set when their parent field exists.
        if isinstance(key, str) and "." in key and not self._get_server_data().get(key.split(".")[0]):
            return self

        current = self.attributes
        new_values = {}
        for attr, op in new_ops.items():
            if isinstance(op, RelationOp):
                new_values[attr] = op.apply_to(current.get(attr), self, attr)
            elif not isinstance(op, UnsetOp):
                new_values[attr] = op.apply_to(current.get(attr))

        if not ignore_validation:
            error = self.validate(new_values)
            if error is not None:
                raise error

        last = self._get_pending_ops()[-1]
        merged = {attr: op.merge_with(last.get(attr)) for attr, op in new_ops.items()}
        identity = self._state_identifier()
        for attr, op in merged.items():
            self._store.set_pending_op(identity, attr, op)
        return self

    def unset(self, attr: str, **options: Any) -> RemoteObject:
        return self.set(attr, None, unset=True, **options)

    def increment(self, attr: str, amount: int | float = 1) -> RemoteObject:
        if not is_number(amount):
            raise TypeMismatchError("Cannot increment by a non-numeric amount.")
        return self.set(attr, IncrementOp(amount))

    def decrement(self, attr: str, amount: int | float = 1) -> RemoteObject:
        if not is_number(amount):
            raise TypeMismatchError("Cannot decrement by a non-numeric amount.")
        return self.set(attr, IncrementOp(-amount))

    def add(self, attr: str, item: Any) -> RemoteObject:
        return self.set(attr, AddOp([item]))

    def add_all(self, attr: str, items: list[Any]) -> RemoteObject:
        return self.set(attr, AddOp(items))

    def add_unique(self, attr: str, item: Any) -> RemoteObject:
        return self.set(attr, AddUniqueOp([item]))

    def add_all_unique(self, attr: str, items: list[Any]) -> RemoteObject:
        return self.set(attr, AddUniqueOp(items))

    def remove(self, attr: str, item: Any) -> RemoteObject:
        return self.set(attr, RemoveOp([item]))

    def remove_all(self, attr: str, items: list[Any]) -> RemoteObject:
        return self.set(attr, RemoveOp(items))

    def set_acl(self, acl: ACL, **options: Any) -> RemoteObject:
        return self.set("ACL", acl, **options)

    def revert(self, *keys: str) -> None:
        """Drop unsaved changes in the current batch, for `keys` or all of them."""
        for key in keys:
            if not isinstance(key, str):
                raise TypeMismatchError("revert expects either no, or a list of string, arguments.")
        self._clear_pending_ops(list(keys) if keys else None)

    def clear(self) -> RemoteObject:
        """Unset every attribute except server timestamps and read-only ones."""
        keep = set(SERVER_TIMESTAMPS) | set(self.read_only_attributes())
        erasable = {attr: True for attr in self.attributes if attr not in keep}
        return self.set(erasable, unset=True)

    # -----------------------------------------------------------------------
    # Copies
    # -----------------------------------------------------------------------

    def clone(self) -> RemoteObject:
        """A new, unsaved object with the same attributes."""
        copy = type(self)(self.class_name, client=self._client)
        readonly = self.read_only_attributes()
        copy.set({k: v for k, v in self.attributes.items() if k not in readonly})
        return copy

    def new_instance(self) -> RemoteObject:
        """Another handle for the same record, with its own copy of the state when handles are unique."""
        copy = type(self)(self.class_name, client=self._client)
        copy.id = self.id
        if self._client.single_instance:
            return copy
        self._store.duplicate_state(self._state_identifier(), copy._state_identifier())
        return copy

    # -----------------------------------------------------------------------
    # JSON
    # -----------------------------------------------------------------------

    def to_pointer(self) -> dict[str, Any]:
        if not self.id:
            raise UnsavedReferenceError("Cannot create a pointer to an unsaved object")
        return {"__type": "Pointer", "className": self.class_name, "objectId": self.id}

    def to_json(self, seen: list[Any] | None = None) -> AttributeMap:
        seen_entry = f"{self.class_name}:{self.id}" if self.id else self
        if seen is None:
            seen = [seen_entry]
        json: AttributeMap = {}
        for attr, value in self.attributes.items():
            if attr in SERVER_TIMESTAMPS and isinstance(value, datetime):
                json[attr] = format_date(value)
            else:
                json[attr] = encode(value, False, False, seen)
        for attr, op in self._get_pending_ops()[0].items():
            json[attr] = op.to_json()
        if self.id:
            json["objectId"] = self.id
        return json

    def _to_full_json(self, seen: list[Any]) -> AttributeMap:
        json = self.to_json(seen)
        json["__type"] = "Object"
        json["className"] = self.class_name
        return json

    @classmethod
    def from_json(cls, json: dict[str, Any], override: bool = False, *, client: Any) -> RemoteObject:
        """
        Handle for a `{"className": ..., "objectId": ...}` payload, using the
        subclass registered for the class. With `override`, server data
        already known for the record is replaced instead of merged.
        """
        class_name = json.get("className")
        if not class_name:
            raise MirrorError(ErrorCode.INVALID_CLASS_NAME, "Cannot create an object without a className")
        subclass = client.subclass_for(class_name)
        obj = subclass(class_name, client=client)
        other = {k: v for k, v in json.items() if k not in ("className", "__type")}
        if override:
            if other.get("objectId"):
                obj.id = other["objectId"]
            obj._clear_server_data()
        obj._finish_fetch(other)
        if json.get("objectId"):
            obj._set_existed(True)
        return obj

    # -----------------------------------------------------------------------
    # Server round trips
    # -----------------------------------------------------------------------

    def _get_save_json(self) -> AttributeMap:
        pending = self._get_pending_ops()
        # Containers with pending ops go out as those ops, in the save that owns them.
        touched = {field.split(".")[0] for batch in pending for field in batch}
        json: AttributeMap = {}
        for attr, value in self._get_dirty_object_attributes().items():
            if attr not in touched:
                json[attr] = SetOp(value).to_json()
        for attr, op in pending[0].items():
            json[attr] = op.to_json()
        return json

    def _get_save_params(self) -> SaveParams:
        if self.id:
            return SaveParams("PUT", f"classes/{self.class_name}/{self.id}", self._get_save_json())
        return SaveParams("POST", f"classes/{self.class_name}", self._get_save_json())

    def _finish_fetch(self, server_data: AttributeMap) -> None:
        """Commit a full server representation of the object."""
        if not self.id and server_data.get("objectId"):
            self.id = server_data["objectId"]
        identity = self._state_identifier()
        self._store.initialize_state(identity)
        decoded: AttributeMap = {}
        for attr, value in server_data.items():
            if attr == "ACL":
                decoded[attr] = ACL(value)
            elif attr != "objectId":
                decoded[attr] = decode(value, self._client)
                if isinstance(decoded[attr], Relation):
                    decoded[attr]._ensure_parent_and_key(self, attr)
        for attr in SERVER_TIMESTAMPS:
            if isinstance(decoded.get(attr), str):
                decoded[attr] = parse_date(decoded[attr])
        if not decoded.get("updatedAt") and decoded.get("createdAt"):
            decoded["updatedAt"] = decoded["createdAt"]
        self._store.commit_server_changes(identity, decoded)

    def _handle_save_response(self, response: AttributeMap, status: int | None) -> None:
        """Pop the batch that was sent and commit what the server returned."""
        store = self._store
        # Containers edited in place went out whole; commit them so they read clean.
        touched = {attr.split(".")[0] for batch in self._get_pending_ops() for attr in batch}
        changes: AttributeMap = {
            attr: value for attr, value in self._get_dirty_object_attributes().items() if attr not in touched
        }
        pending = store.pop_pending_state(self._state_identifier())
        for attr, op in pending.items():
            if isinstance(op, RelationOp):
                changes[attr] = op.apply_to(None, self, attr)
            elif attr not in response:
                # Only Set and Unset come back without a result.
                changes[attr] = op.apply_to(None)
        for attr, value in response.items():
            if attr in SERVER_TIMESTAMPS and isinstance(value, str):
                changes[attr] = parse_date(value)
            elif attr == "ACL":
                changes[attr] = ACL(value)
            elif attr != "objectId":
                decoded = decode(value, self._client)
                changes[attr] = None if isinstance(decoded, UnsetOp) else decoded
        if changes.get("createdAt") and not changes.get("updatedAt"):
            changes["updatedAt"] = changes["createdAt"]

        self._migrate_id(response.get("objectId"))
        if status != 201:
            self._set_existed(True)
        store.commit_server_changes(self._state_identifier(), changes)

    def _handle_save_error(self) -> None:
        """Fold the failed batch back into the current one."""
        self._store.merge_first_pending_state(self._state_identifier())

    def save(self, attrs: AttributeMap | None = None, *, cascade_save: bool = True, **options: Any) -> asyncio.Future:
        """
        Save pending changes. Returns a future resolving to this object.

        The batch being saved is frozen before this returns, so changes made
        while the request is in flight go into the next save. Unsaved
        objects and files referenced by this one are saved first unless
        `cascade_save` is False.
        """
        if attrs:
            error = self.validate(attrs)
            if error is not None:
                raise error
            self.set(attrs)
        request_options = RequestOptions(**options)
        children = unsaved_children(self) if cascade_save else []
        return self._client.controller.save(self, request_options, children)

    async def fetch(self, **options: Any) -> RemoteObject:
        """Replace local state with the server's copy. Pending changes in the current batch are dropped."""
        return await self._client.controller.fetch(self, RequestOptions(**options))

    def destroy(self, **options: Any) -> asyncio.Future:
        """Delete the record. Resolves to None right away for unsaved objects."""
        if not self.id:
            done = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done
        return self._client.controller.destroy(self, RequestOptions(**options))
