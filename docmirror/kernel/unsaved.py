"""
docmirror Kernel: Unsaved Children

Walks an object's estimated attributes to find what has to be saved before
the object itself can be encoded: dirty nested objects and files with no
url yet. Also answers whether an object is ready to be serialized, which is
what batch saves use to order their requests.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any

from docmirror.kernel.errors import MirrorError, UnsavedReferenceError
from docmirror.kernel.files import RemoteFile
from docmirror.kernel.relation import Relation
from docmirror.kernel.types import MAX_RECURSIVE_CALLS, ObjectRef, ref_key


@dataclass
class _Encountered:
    # key -> the object when it is dirty, True when it is clean
    objects: dict[str, Any] = field(default_factory=dict)
    files: list[RemoteFile] = field(default_factory=list)


def unsaved_children(obj: ObjectRef, allow_deep_unsaved: bool = False) -> list[Any]:
    """
    Dirty objects and unsaved files reachable from `obj`, objects first.

    Direct children may be unsaved. An unsaved object nested deeper than
    that raises unless `allow_deep_unsaved` is set.
    """
    encountered = _Encountered()
    identifier = ref_key(obj)
    encountered.objects[identifier] = obj if obj.dirty() else True
    for value in obj.attributes.values():
        _traverse(value, encountered, False, allow_deep_unsaved, 0)
    unsaved: list[Any] = [
        found for key, found in encountered.objects.items() if key != identifier and found is not True
    ]
    return unsaved + encountered.files


def _traverse(value: Any, encountered: _Encountered, should_throw: bool, allow_deep_unsaved: bool, depth: int) -> None:
    if depth > MAX_RECURSIVE_CALLS:
        raise MirrorError(
            message="Traversing object failed due to high number of recursive calls, "
            "likely caused by circular reference within object."
        )
    if isinstance(value, ObjectRef):
        if not value.id and should_throw:
            raise UnsavedReferenceError("Cannot create a pointer to an unsaved Object.")
        identifier = ref_key(value)
        if identifier not in encountered.objects:
            encountered.objects[identifier] = value if value.dirty() else True
            for nested in value.attributes.values():
                _traverse(nested, encountered, not allow_deep_unsaved, allow_deep_unsaved, depth + 1)
        return
    if isinstance(value, RemoteFile):
        if not value.url and not any(f is value for f in encountered.files):
            encountered.files.append(value)
        return
    if isinstance(value, Relation):
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _traverse(item, encountered, should_throw, allow_deep_unsaved, depth + 1)
    elif isinstance(value, dict):
        for item in value.values():
            _traverse(item, encountered, should_throw, allow_deep_unsaved, depth + 1)


def can_be_serialized(
    obj: Any,
    assume_saved: Collection[str] = frozenset(),
    files_uploaded_first: bool = False,
) -> bool:
    """
    True if every object reference in `obj`'s attributes has an id (or is
    listed in `assume_saved` by `Class:id` key) and every file has a url.
    With `files_uploaded_first`, files without a url count as ready.
    """
    if not isinstance(obj, ObjectRef):
        return True
    return all(_serializable(value, assume_saved, files_uploaded_first) for value in obj.attributes.values())


def _serializable(value: Any, assume_saved: Collection[str], files_uploaded_first: bool) -> bool:
    if isinstance(value, Relation):
        return True
    if isinstance(value, ObjectRef):
        return bool(value.id) or ref_key(value) in assume_saved
    if isinstance(value, RemoteFile):
        return files_uploaded_first or bool(value.url)
    if isinstance(value, (list, tuple)):
        return all(_serializable(v, assume_saved, files_uploaded_first) for v in value)
    if isinstance(value, dict):
        return all(_serializable(v, assume_saved, files_uploaded_first) for v in value.values())
    return True
