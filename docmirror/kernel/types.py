"""
docmirror Kernel: Shared Types

Data classes used across ops, mutations, state stores and the object facade.
These are the contracts that bind the kernel together.

State layout per object:
- server_data: last values the backend confirmed
- pending_ops: stack of op batches, oldest first; the last one is the current batch
- object_cache: fingerprints of committed dict/list values, for in-place mutation checks
- existed: the object existed server-side before this session
- tasks: the object's request queue
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from docmirror.kernel.task_queue import TaskQueue

if TYPE_CHECKING:
    from docmirror.kernel.ops import Op

AttributeMap = dict[str, Any]
OpsMap = dict[str, "Op"]
ObjectCache = dict[str, str]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KEY_PATTERN = re.compile(r"^[A-Za-z][0-9A-Za-z_.]*$")

# Fields the server owns. `set` silently ignores them.
SERVER_TIMESTAMPS: tuple[str, ...] = ("createdAt", "updatedAt")

LOCAL_ID_PREFIX = "local"

MAX_RECURSIVE_CALLS = 999


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class State:
    """Everything the SDK knows about one object."""

    server_data: AttributeMap = field(default_factory=dict)
    pending_ops: list[OpsMap] = field(default_factory=lambda: [{}])
    object_cache: ObjectCache = field(default_factory=dict)
    tasks: TaskQueue = field(default_factory=TaskQueue)
    existed: bool = False


@dataclass
class ObjectIdentity:
    """
    State key in single-instance mode. `id` is the server id, or the
    generated local id before the first successful save.
    """

    class_name: str
    id: str

    @property
    def key(self) -> str:
        return f"{self.class_name}:{self.id}"


@dataclass
class RequestOptions:
    """Per-call options forwarded to the REST transport."""

    use_master_key: bool | None = None
    session_token: str | None = None
    installation_id: str | None = None
    context: dict[str, Any] | None = None
    batch_size: int | None = None
    include: list[str] | None = None
    return_status: bool = False


@dataclass
class SaveParams:
    """One save request: what to send and where."""

    method: str
    path: str
    body: AttributeMap

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method, "path": self.path, "body": self.body}


class ObjectRef:
    """
    Anything addressable on the backend as (class_name, id).

    RemoteObject is the concrete implementation. Ops, encoding and the
    unsaved-children walk check against this base so they stay free of
    import cycles with the facade.
    """

    class_name: str
    id: str | None

    def _get_id(self) -> str:
        raise NotImplementedError

    def _get_server_data(self) -> AttributeMap:
        raise NotImplementedError

    def _to_full_json(self, seen: list[Any]) -> AttributeMap:
        raise NotImplementedError

    @property
    def attributes(self) -> AttributeMap:
        raise NotImplementedError

    def dirty(self, attr: str | None = None) -> bool:
        raise NotImplementedError

    def to_pointer(self) -> dict[str, Any]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_valid_key(key: str) -> bool:
    """Attribute names start with a letter; letters, digits, _ and . after that."""
    return isinstance(key, str) and bool(KEY_PATTERN.match(key))


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def ref_key(obj: ObjectRef) -> str:
    """`Class:id` key of an object reference, using the local id when unsaved."""
    return f"{obj.class_name}:{obj._get_id()}"


def parse_date(iso: str) -> datetime:
    """Parse a backend ISO 8601 timestamp into an aware UTC datetime."""
    dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def format_date(dt: datetime) -> str:
    """Inverse of parse_date: millisecond precision, `Z` suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Current UTC time in wire format."""
    return format_date(datetime.now(UTC))
