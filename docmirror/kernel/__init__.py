"""
docmirror Kernel: the local object state engine.

Components:
  ops          -- Set/Unset/Increment/Add/AddUnique/Remove/Relation operations
  mutations    -- pure functions over one object's State
  state_store  -- single-instance and unique-instance State storage
  task_queue   -- per-object FIFO of save/destroy requests
  objects      -- RemoteObject, the handle applications read and write
"""

from docmirror.kernel.acl import ACL
from docmirror.kernel.errors import (
    AggregateError,
    CycleError,
    ErrorCode,
    InvalidMergeError,
    MirrorError,
    TypeMismatchError,
    UnsavedReferenceError,
)
from docmirror.kernel.files import RemoteFile
from docmirror.kernel.objects import RemoteObject
from docmirror.kernel.ops import (
    AddOp,
    AddUniqueOp,
    IncrementOp,
    RelationOp,
    RemoveOp,
    SetOp,
    UnsetOp,
    op_from_json,
)
from docmirror.kernel.relation import Relation
from docmirror.kernel.state_store import SingleInstanceStore, StateStore, UniqueInstanceStore
from docmirror.kernel.task_queue import TaskQueue
from docmirror.kernel.types import ObjectIdentity, RequestOptions, State

__all__ = [
    "ACL",
    "AddOp",
    "AddUniqueOp",
    "AggregateError",
    "CycleError",
    "ErrorCode",
    "IncrementOp",
    "InvalidMergeError",
    "MirrorError",
    "ObjectIdentity",
    "Relation",
    "RelationOp",
    "RemoteFile",
    "RemoteObject",
    "RemoveOp",
    "RequestOptions",
    "SetOp",
    "SingleInstanceStore",
    "State",
    "StateStore",
    "TaskQueue",
    "TypeMismatchError",
    "UniqueInstanceStore",
    "UnsavedReferenceError",
    "UnsetOp",
    "op_from_json",
]
