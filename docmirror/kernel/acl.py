"""
docmirror Kernel: Access Control Lists

An ACL maps a user id, `role:<name>` or `*` (public) to read/write flags.
Only granted permissions are stored; revoking the last permission of an
entry drops the entry.
"""

from __future__ import annotations

from typing import Any

from docmirror.kernel.errors import ErrorCode, MirrorError
from docmirror.kernel.types import ObjectRef

PUBLIC_KEY = "*"
PERMISSIONS = ("read", "write")


def _invalid(message: str) -> MirrorError:
    return MirrorError(ErrorCode.INVALID_ACL, message)


class ACL:
    def __init__(self, arg: dict[str, dict[str, bool]] | ObjectRef | None = None) -> None:
        self.permissions_by_id: dict[str, dict[str, bool]] = {}
        if arg is None:
            return
        if isinstance(arg, ObjectRef):
            self.set_read_access(arg, True)
            self.set_write_access(arg, True)
            return
        if not isinstance(arg, dict):
            raise _invalid("ACL must be initialized with a dict or a user object.")
        for user_id, access_list in arg.items():
            if not isinstance(access_list, dict):
                raise _invalid("Tried to create an ACL with an invalid permission type.")
            self.permissions_by_id[user_id] = {}
            for permission, allowed in access_list.items():
                if permission not in PERMISSIONS:
                    raise _invalid("Tried to create an ACL with an invalid permission type.")
                if not isinstance(allowed, bool):
                    raise _invalid("Tried to create an ACL with an invalid permission value.")
                self.permissions_by_id[user_id][permission] = allowed

    def __repr__(self) -> str:
        return f"ACL({self.permissions_by_id!r})"

    def to_json(self) -> dict[str, dict[str, bool]]:
        return {k: dict(v) for k, v in self.permissions_by_id.items()}

    def equals(self, other: Any) -> bool:
        return isinstance(other, ACL) and self.permissions_by_id == other.permissions_by_id

    # -- generic access --------------------------------------------------

    @staticmethod
    def _entry_key(user_id: str | ObjectRef) -> str:
        if isinstance(user_id, ObjectRef):
            if not user_id.id:
                raise _invalid("Cannot get access for a user without an ID")
            return user_id.id
        if not isinstance(user_id, str):
            raise _invalid("userId must be a string.")
        return user_id

    def _set_access(self, access_type: str, user_id: str | ObjectRef, allowed: bool) -> None:
        key = self._entry_key(user_id)
        if not isinstance(allowed, bool):
            raise _invalid("allowed must be either true or false.")
        permissions = self.permissions_by_id.get(key)
        if permissions is None:
            if not allowed:
                return
            permissions = self.permissions_by_id[key] = {}
        if allowed:
            permissions[access_type] = True
        else:
            permissions.pop(access_type, None)
            if not permissions:
                del self.permissions_by_id[key]

    def _get_access(self, access_type: str, user_id: str | ObjectRef) -> bool:
        permissions = self.permissions_by_id.get(self._entry_key(user_id))
        return bool(permissions and permissions.get(access_type))

    def set_read_access(self, user_id: str | ObjectRef, allowed: bool) -> None:
        self._set_access("read", user_id, allowed)

    def get_read_access(self, user_id: str | ObjectRef) -> bool:
        return self._get_access("read", user_id)

    def set_write_access(self, user_id: str | ObjectRef, allowed: bool) -> None:
        self._set_access("write", user_id, allowed)

    def get_write_access(self, user_id: str | ObjectRef) -> bool:
        return self._get_access("write", user_id)

    # -- public ----------------------------------------------------------

    def set_public_read_access(self, allowed: bool) -> None:
        self.set_read_access(PUBLIC_KEY, allowed)

    def get_public_read_access(self) -> bool:
        return self.get_read_access(PUBLIC_KEY)

    def set_public_write_access(self, allowed: bool) -> None:
        self.set_write_access(PUBLIC_KEY, allowed)

    def get_public_write_access(self) -> bool:
        return self.get_write_access(PUBLIC_KEY)

    # -- roles -----------------------------------------------------------

    @staticmethod
    def _role_key(role: str) -> str:
        if not isinstance(role, str):
            raise _invalid("role must be a String")
        return f"role:{role}"

    def set_role_read_access(self, role: str, allowed: bool) -> None:
        self.set_read_access(self._role_key(role), allowed)

    def get_role_read_access(self, role: str) -> bool:
        return self.get_read_access(self._role_key(role))

    def set_role_write_access(self, role: str, allowed: bool) -> None:
        self.set_write_access(self._role_key(role), allowed)

    def get_role_write_access(self, role: str) -> bool:
        return self.get_write_access(self._role_key(role))
