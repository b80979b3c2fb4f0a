"""
docmirror Kernel: Errors

Every failure the SDK raises is a MirrorError carrying an integer code from
the backend's error table and a human readable message. Local failures
(validation, merges, unsaved references) raise synchronously and never touch
state or network. Remote failures keep the code the server sent back.
"""

from __future__ import annotations

from typing import Any


class ErrorCode:
    """Error codes shared with the backend."""

    OTHER_CAUSE = -1
    INTERNAL_SERVER_ERROR = 1
    CONNECTION_FAILED = 100
    OBJECT_NOT_FOUND = 101
    INVALID_QUERY = 102
    INVALID_CLASS_NAME = 103
    MISSING_OBJECT_ID = 104
    INVALID_KEY_NAME = 105
    INVALID_POINTER = 106
    INVALID_JSON = 107
    COMMAND_UNAVAILABLE = 108
    NOT_INITIALIZED = 109
    INCORRECT_TYPE = 111
    OBJECT_TOO_LARGE = 116
    OPERATION_FORBIDDEN = 119
    INVALID_NESTED_KEY = 121
    INVALID_FILE_NAME = 122
    INVALID_ACL = 123
    TIMEOUT = 124
    DUPLICATE_VALUE = 137
    EXCEEDED_QUOTA = 140
    SCRIPT_FAILED = 141
    VALIDATION_ERROR = 142
    UNSAVED_FILE_ERROR = 151
    REQUEST_LIMIT_EXCEEDED = 155
    DUPLICATE_REQUEST = 159
    INVALID_VALUE = 162
    INVALID_SESSION_TOKEN = 209
    AGGREGATE_ERROR = 600
    FILE_READ_ERROR = 601


class MirrorError(Exception):
    """Base error. `object` is set when the error belongs to one object of a batch."""

    def __init__(self, code: int = ErrorCode.OTHER_CAUSE, message: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.object: Any = None

    def __str__(self) -> str:
        return f"MirrorError {self.code}: {self.message}"


class TypeMismatchError(MirrorError, TypeError):
    """An operation was applied to a value of the wrong type (e.g. incrementing a string)."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INCORRECT_TYPE, message)


class InvalidMergeError(MirrorError, ValueError):
    """Two pending operations on the same attribute cannot be combined."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.OTHER_CAUSE, message)


class UnsavedReferenceError(MirrorError, ValueError):
    """An operation or pointer references an object that has no server id yet."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.MISSING_OBJECT_ID, message)


class CycleError(MirrorError):
    """Unsaved objects reference each other so no save order exists."""

    def __init__(self, message: str = "Tried to save a batch with a cycle.") -> None:
        super().__init__(ErrorCode.OTHER_CAUSE, message)


class AggregateError(MirrorError):
    """Collects the per-object failures of a batch operation."""

    def __init__(self, errors: list[MirrorError], message: str = "") -> None:
        super().__init__(
            ErrorCode.AGGREGATE_ERROR,
            message or f"{len(errors)} object(s) failed",
        )
        self.errors = errors
