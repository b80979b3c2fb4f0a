"""
MirrorClient -- the context object every RemoteObject is bound to.

Holds the settings, the REST transport, the object controller, the
subclass registry and the active state store. Lifecycle:

  client = MirrorClient(settings)         # choose the store strategy
  obj = client.object("GameScore", {...}) # use
  client.clear_all_state()                # test teardown

Switching strategies with enable_single_instance()/disable_single_instance()
does not move existing state between stores.
"""

from __future__ import annotations

import logging
from typing import Any

from docmirror.client.config import Settings
from docmirror.client.controller import ObjectController
from docmirror.client.rest import RestController
from docmirror.kernel.errors import ErrorCode, MirrorError
from docmirror.kernel.files import RemoteFile
from docmirror.kernel.objects import RemoteObject
from docmirror.kernel.state_store import SingleInstanceStore, StateStore, UniqueInstanceStore
from docmirror.kernel.types import RequestOptions

logger = logging.getLogger(__name__)


class MirrorClient:
    def __init__(self, settings: Settings | None = None, rest: Any = None):
        self.settings = settings or Settings()
        self.rest = rest if rest is not None else RestController(self.settings)
        self.controller = ObjectController(self)
        self._single_store = SingleInstanceStore()
        self._unique_store = UniqueInstanceStore()
        self.single_instance: bool = bool(self.settings.SINGLE_INSTANCE)
        self._subclasses: dict[str, type[RemoteObject]] = {}

    # -----------------------------------------------------------------------
    # State store
    # -----------------------------------------------------------------------

    @property
    def state(self) -> StateStore:
        """The active store."""
        return self._single_store if self.single_instance else self._unique_store

    def enable_single_instance(self) -> None:
        self.single_instance = True

    def disable_single_instance(self) -> None:
        self.single_instance = False

    def clear_all_state(self) -> None:
        logger.debug("client: clearing all object state")
        self.state.clear_all_state()

    # -----------------------------------------------------------------------
    # Objects
    # -----------------------------------------------------------------------

    def register_subclass(self, class_name: str, cls: type[RemoteObject]) -> None:
        if not isinstance(class_name, str) or not class_name:
            raise TypeError("The first argument must be a valid class name.")
        if not isinstance(cls, type) or not issubclass(cls, RemoteObject):
            raise TypeError("You must register a RemoteObject subclass.")
        self._subclasses[class_name] = cls
        if not cls.class_name:
            cls.class_name = class_name

    def subclass_for(self, class_name: str) -> type[RemoteObject]:
        return self._subclasses.get(class_name, RemoteObject)

    def object(self, class_name: str | dict[str, Any], attributes: dict[str, Any] | None = None, **kwargs: Any) -> RemoteObject:
        """New unsaved object, built from the registered subclass when there is one."""
        name = class_name.get("className") if isinstance(class_name, dict) else class_name
        return self.subclass_for(name)(class_name, attributes, client=self, **kwargs)

    def create_without_data(self, class_name: str, object_id: str) -> RemoteObject:
        """Handle for an existing record without fetching it."""
        obj = self.subclass_for(class_name)(class_name, client=self)
        obj.id = object_id
        return obj

    def object_from_json(self, json: dict[str, Any], override: bool = False) -> RemoteObject:
        return RemoteObject.from_json(json, override, client=self)

    def file(self, name: str, data: bytes | str | None = None, content_type: str | None = None) -> RemoteFile:
        return RemoteFile(name, data, content_type, client=self)

    # -----------------------------------------------------------------------
    # Batch operations
    # -----------------------------------------------------------------------

    async def save_all(self, objects: list[Any], **options: Any) -> list[Any]:
        return await self.controller.save_all(objects, RequestOptions(**options))

    async def destroy_all(self, objects: list[RemoteObject], **options: Any) -> list[RemoteObject]:
        return await self.controller.destroy_all(objects, RequestOptions(**options))

    async def fetch_all(self, objects: list[RemoteObject], **options: Any) -> list[RemoteObject]:
        return await self.controller.fetch_all(objects, RequestOptions(**options))

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def aclose(self) -> None:
        if hasattr(self.rest, "aclose"):
            await self.rest.aclose()

    async def __aenter__(self) -> MirrorClient:
        problems = self.settings.validate()
        if problems:
            raise MirrorError(ErrorCode.NOT_INITIALIZED, "; ".join(problems))
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
