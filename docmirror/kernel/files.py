"""
docmirror Kernel: Remote Files

A file attribute. The SDK treats the content as opaque: it uploads the
bytes once through `files/<name>` and from then on only the server-assigned
name and url travel in save bodies. An unsaved file cannot be encoded, so
files nested in an object are uploaded before the object itself.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any

from docmirror.kernel.errors import ErrorCode, MirrorError
from docmirror.kernel.types import RequestOptions


class RemoteFile:
    def __init__(
        self,
        name: str,
        data: bytes | str | None = None,
        content_type: str | None = None,
        url: str | None = None,
        client: Any = None,
    ) -> None:
        if not name:
            raise MirrorError(ErrorCode.INVALID_FILE_NAME, "Files must have a name.")
        self.name = name
        self.content_type = content_type
        self.url = url
        self._data = data.encode("utf-8") if isinstance(data, str) else data
        self._client = client
        self._previous_save: asyncio.Future | None = None

    def __repr__(self) -> str:
        return f"RemoteFile(name={self.name!r}, url={self.url!r})"

    def base64(self) -> str | None:
        if self._data is None:
            return None
        return base64.b64encode(self._data).decode("ascii")

    async def save(self, **options: Any) -> RemoteFile:
        """Upload the content. Concurrent and repeated calls share one upload."""
        if self.url:
            return self
        if self._previous_save is None:
            if self._data is None:
                raise MirrorError(ErrorCode.FILE_READ_ERROR, "Cannot save a file without data.")
            if self._client is None:
                raise MirrorError(ErrorCode.NOT_INITIALIZED, "RemoteFile has no client to save through.")
            self._previous_save = asyncio.ensure_future(
                self._client.controller.save_file(self, RequestOptions(**options))
            )
        try:
            result = await self._previous_save
        except MirrorError:
            self._previous_save = None
            raise
        self.name = result.name
        self.url = result.url
        return self

    def to_json(self) -> dict[str, Any]:
        return {"__type": "File", "name": self.name, "url": self.url}

    @classmethod
    def from_json(cls, json: dict[str, Any], client: Any = None) -> RemoteFile:
        if json.get("__type") != "File" or not json.get("name"):
            raise MirrorError(ErrorCode.INVALID_JSON, "JSON object does not represent a RemoteFile")
        return cls(json["name"], url=json.get("url"), client=client)

    def equals(self, other: Any) -> bool:
        if self is other:
            return True
        return (
            isinstance(other, RemoteFile)
            and self.name == other.name
            and self.url == other.url
            and self.url is not None
        )
