"""
docmirror Kernel: State Stores

Where per-object State records live. Two strategies share one interface:

- SingleInstanceStore: keyed by (class_name, id). Every handle for the same
  record shares one State, so an edit through one handle is visible through
  all of them.
- UniqueInstanceStore: keyed by handle identity. Each handle owns its State
  in a per-handle slot; two handles for the same record never interfere.

The base class holds the operations that only differ in how the State is
found. Readers return empty defaults for unknown identities; writers create
the State on first use.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from docmirror.kernel import mutations
from docmirror.kernel.ops import Op
from docmirror.kernel.task_queue import Task
from docmirror.kernel.types import AttributeMap, ObjectCache, OpsMap, State

logger = logging.getLogger(__name__)


class StateStore:
    """Abstract state store. Subclasses decide how identities map to States."""

    def get_state(self, identity: Any) -> State | None:
        raise NotImplementedError

    def initialize_state(self, identity: Any, initial: State | None = None) -> State:
        raise NotImplementedError

    def remove_state(self, identity: Any) -> State | None:
        raise NotImplementedError

    def clear_all_state(self) -> None:
        raise NotImplementedError

    def duplicate_state(self, source: Any, dest: Any) -> None:
        raise NotImplementedError

    # -- server data -----------------------------------------------------

    def get_server_data(self, identity: Any) -> AttributeMap:
        state = self.get_state(identity)
        return state.server_data if state else {}

    def set_server_data(self, identity: Any, attributes: AttributeMap) -> None:
        state = self.initialize_state(identity)
        mutations.set_server_data(state.server_data, attributes)

    def commit_server_changes(self, identity: Any, changes: AttributeMap) -> None:
        state = self.initialize_state(identity)
        mutations.commit_server_changes(state.server_data, state.object_cache, changes)

    def get_object_cache(self, identity: Any) -> ObjectCache:
        state = self.get_state(identity)
        return state.object_cache if state else {}

    # -- pending ops -----------------------------------------------------

    def get_pending_ops(self, identity: Any) -> list[OpsMap]:
        state = self.get_state(identity)
        return state.pending_ops if state else [{}]

    def set_pending_op(self, identity: Any, attr: str, op: Op | None) -> None:
        state = self.initialize_state(identity)
        mutations.set_pending_op(state.pending_ops, attr, op)

    def push_pending_state(self, identity: Any) -> None:
        state = self.initialize_state(identity)
        mutations.push_pending_state(state.pending_ops)

    def pop_pending_state(self, identity: Any) -> OpsMap:
        state = self.initialize_state(identity)
        return mutations.pop_pending_state(state.pending_ops)

    def merge_first_pending_state(self, identity: Any) -> None:
        state = self.initialize_state(identity)
        mutations.merge_first_pending_state(state.pending_ops)

    # -- estimation ------------------------------------------------------

    def estimate_attribute(self, identity: Any, attr: str) -> Any:
        return mutations.estimate_attribute(
            self.get_server_data(identity), self.get_pending_ops(identity), identity, attr
        )

    def estimate_attributes(self, identity: Any) -> AttributeMap:
        return mutations.estimate_attributes(
            self.get_server_data(identity), self.get_pending_ops(identity), identity
        )

    # -- tasks -----------------------------------------------------------

    def enqueue_task(self, identity: Any, task: Task) -> asyncio.Future:
        state = self.initialize_state(identity)
        return state.tasks.enqueue(task)


# ---------------------------------------------------------------------------
# Single instance
# ---------------------------------------------------------------------------


class SingleInstanceStore(StateStore):
    """One State per (class_name, id), shared by every handle."""

    def __init__(self) -> None:
        self._states: dict[str, dict[str, State]] = {}

    def get_state(self, identity: Any) -> State | None:
        return self._states.get(identity.class_name, {}).get(identity.id)

    def initialize_state(self, identity: Any, initial: State | None = None) -> State:
        state = self.get_state(identity)
        if state is not None:
            return state
        state = initial if initial is not None else State()
        self._states.setdefault(identity.class_name, {})[identity.id] = state
        return state

    def remove_state(self, identity: Any) -> State | None:
        by_id = self._states.get(identity.class_name)
        if not by_id:
            return None
        return by_id.pop(identity.id, None)

    def clear_all_state(self) -> None:
        logger.debug("single_instance_store: clearing %d class(es)", len(self._states))
        self._states = {}

    def duplicate_state(self, source: Any, dest: Any) -> None:
        # Same record, same State: the copy only needs the id.
        dest.id = source.id


# ---------------------------------------------------------------------------
# Unique instance
# ---------------------------------------------------------------------------


class UniqueInstanceStore(StateStore):
    """
    One State per handle. The State lives on the handle itself as
    `(store token, State)`; a slot written under an older token is treated
    as empty, which is how clear_all_state drops every State at once.
    """

    SLOT = "_state_slot"

    def __init__(self) -> None:
        self._token = object()

    def get_state(self, identity: Any) -> State | None:
        slot = getattr(identity, self.SLOT, None)
        if slot is None or slot[0] is not self._token:
            return None
        return slot[1]

    def initialize_state(self, identity: Any, initial: State | None = None) -> State:
        state = self.get_state(identity)
        if state is not None:
            return state
        state = initial if initial is not None else State()
        setattr(identity, self.SLOT, (self._token, state))
        return state

    def remove_state(self, identity: Any) -> State | None:
        state = self.get_state(identity)
        if state is not None:
            setattr(identity, self.SLOT, None)
        return state

    def clear_all_state(self) -> None:
        logger.debug("unique_instance_store: invalidating all handle states")
        self._token = object()

    def duplicate_state(self, source: Any, dest: Any) -> None:
        old = self.initialize_state(source)
        self.initialize_state(
            dest,
            State(
                server_data=_copy_plain(old.server_data),
                pending_ops=[dict(batch) for batch in old.pending_ops],
                object_cache=dict(old.object_cache),
                existed=old.existed,
            ),
        )


def _copy_plain(value: Any) -> Any:
    """Copy nested dicts and lists; object handles and other values are shared."""
    if isinstance(value, dict):
        return {k: _copy_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_copy_plain(v) for v in value]
    return value
