"""
Object controller -- save, fetch and destroy orchestration.

Single-object saves push a pending batch, then run on the object's task
queue: save unsaved children, send the request, and either commit the
response or fold the batch back on failure.

Batch saves (`save_all`) plan every batch up front so a reference cycle
among unsaved objects fails before anything is sent. Each batch then:

1. pushes a pending batch and enqueues one task per object
2. waits until every task reached the front of its queue
3. sends one POST batch request
4. hands each task its own result; per-object failures are collected and
   raised together as an AggregateError once everything settled
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter, ValidationError

from docmirror.client.models import BatchRequest, BatchRequestItem, BatchResultItem, FileUploadResult
from docmirror.kernel.encoding import unique
from docmirror.kernel.errors import AggregateError, CycleError, ErrorCode, MirrorError
from docmirror.kernel.files import RemoteFile
from docmirror.kernel.objects import RemoteObject
from docmirror.kernel.types import ObjectRef, RequestOptions, SaveParams, ref_key
from docmirror.kernel.unsaved import can_be_serialized, unsaved_children

if TYPE_CHECKING:
    from docmirror.client.context import MirrorClient

logger = logging.getLogger(__name__)

_BATCH_RESULTS = TypeAdapter(list[BatchResultItem])


def _flatten_include(include: Any) -> list[str]:
    if include is None:
        return []
    if isinstance(include, str):
        return [include]
    keys: list[str] = []
    for key in include:
        keys.extend(_flatten_include(key))
    return keys


class ObjectController:
    """Talks to the REST transport on behalf of RemoteObjects."""

    def __init__(self, client: MirrorClient):
        self.client = client

    @property
    def rest(self) -> Any:
        return self.client.rest

    def _batch_size(self, options: RequestOptions) -> int:
        return options.batch_size or self.client.settings.REQUEST_BATCH_SIZE

    def _batch_path(self, path: str) -> str:
        return self.client.settings.server_path + path

    async def _request_batch(self, requests: list[BatchRequestItem], options: RequestOptions) -> list[BatchResultItem]:
        body = BatchRequest(requests=requests).model_dump()
        raw = await self.rest.request("POST", "batch", body, options)
        try:
            results = _BATCH_RESULTS.validate_python(raw)
        except ValidationError as e:
            raise MirrorError(ErrorCode.INVALID_JSON, f"Malformed batch response: {e}") from e
        if len(results) != len(requests):
            raise MirrorError(
                ErrorCode.INVALID_JSON,
                f"Batch response has {len(results)} results for {len(requests)} requests",
            )
        return results

    # -----------------------------------------------------------------------
    # Save
    # -----------------------------------------------------------------------

    def save(
        self,
        target: RemoteObject,
        options: RequestOptions,
        children: list[Any] | None = None,
    ) -> asyncio.Future:
        """
        Freeze the target's current batch and queue its save. Must be called
        from a running event loop; the returned future resolves to `target`.
        """
        target._get_id()
        identity = target._state_identifier()
        store = self.client.state
        store.push_pending_state(identity)
        request_options = replace(options, return_status=True)

        async def task() -> RemoteObject:
            try:
                if children:
                    await self.save_all(children, options, exclude=target)
                params = target._get_save_params()
                response = await self.rest.request(params.method, params.path, params.body, request_options)
            except Exception:
                target._handle_save_error()
                raise
            status = response.pop("_status", None)
            target._handle_save_response(response, status)
            return target

        return store.enqueue_task(identity, task)

    def _plan_batches(self, objects: list[RemoteObject], batch_size: int) -> list[list[RemoteObject]]:
        """Order objects so each batch only references saved or earlier-batch objects."""
        batches: list[list[RemoteObject]] = []
        planned: set[str] = set()
        pending = objects
        while pending:
            batch: list[RemoteObject] = []
            remaining: list[RemoteObject] = []
            for obj in pending:
                if len(batch) < batch_size and can_be_serialized(obj, planned, files_uploaded_first=True):
                    batch.append(obj)
                else:
                    remaining.append(obj)
            if not batch:
                raise CycleError()
            batches.append(batch)
            planned.update(ref_key(obj) for obj in batch)
            pending = remaining
        return batches

    async def save_all(
        self,
        targets: list[Any],
        options: RequestOptions,
        exclude: ObjectRef | None = None,
    ) -> list[Any]:
        """
        Save objects, their unsaved children and unsaved files. Raises
        CycleError before any request when no save order exists, and
        AggregateError listing every object that failed.
        """
        if not targets:
            return []
        unsaved: list[Any] = list(targets)
        for target in targets:
            if isinstance(target, RemoteObject):
                unsaved.extend(unsaved_children(target, True))
        unsaved = unique(unsaved)
        if exclude is not None:
            excluded = ref_key(exclude)
            unsaved = [u for u in unsaved if not (isinstance(u, ObjectRef) and ref_key(u) == excluded)]

        files = [u for u in unsaved if isinstance(u, RemoteFile)]
        objects = [u for u in unsaved if isinstance(u, RemoteObject)]
        batches = self._plan_batches(objects, self._batch_size(options))

        if files:
            await asyncio.gather(
                *(f.save(use_master_key=options.use_master_key, session_token=options.session_token) for f in files)
            )

        errors: list[MirrorError] = []
        for batch in batches:
            await self._save_batch(batch, options, errors)
        if errors:
            raise AggregateError(errors)
        return list(targets)

    async def _save_batch(self, batch: list[RemoteObject], options: RequestOptions, errors: list[MirrorError]) -> None:
        loop = asyncio.get_running_loop()
        returned: asyncio.Future = loop.create_future()
        ready = [loop.create_future() for _ in batch]
        store = self.client.state
        tasks = []

        for index, obj in enumerate(batch):
            obj._get_id()
            identity = obj._state_identifier()
            store.push_pending_state(identity)

            async def task(index: int = index, obj: RemoteObject = obj) -> RemoteObject:
                ready[index].set_result(None)
                try:
                    result = (await returned)[index]
                except Exception:
                    obj._handle_save_error()
                    raise
                if isinstance(result, MirrorError):
                    obj._handle_save_error()
                    raise result
                status, response = result
                obj._handle_save_response(response, status)
                return obj

            tasks.append(store.enqueue_task(identity, task))

        await asyncio.gather(*ready)

        results: dict[int, Any] = {}
        sent: list[tuple[int, SaveParams]] = []
        for index, obj in enumerate(batch):
            try:
                sent.append((index, obj._get_save_params()))
            except MirrorError as e:
                results[index] = e

        try:
            items = []
            if sent:
                items = await self._request_batch(
                    [
                        BatchRequestItem(method=params.method, path=self._batch_path(params.path), body=params.body)
                        for _, params in sent
                    ],
                    options,
                )
        except Exception as e:
            returned.set_exception(e)
        else:
            for (index, params), item in zip(sent, items):
                if item.success is not None:
                    status = 201 if params.method == "POST" and "createdAt" in item.success else 200
                    results[index] = (status, dict(item.success))
                elif item.error is not None:
                    results[index] = MirrorError(item.error.code, item.error.error)
                else:
                    results[index] = MirrorError(ErrorCode.INVALID_JSON, "Batch result has neither success nor error")
            returned.set_result(results)

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        request_error = returned.exception()
        if request_error is not None:
            raise request_error
        for obj, outcome in zip(batch, outcomes):
            if isinstance(outcome, MirrorError):
                outcome.object = obj
                logger.warning("controller: saving %s failed: %s", obj, outcome)
                errors.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome

    # -----------------------------------------------------------------------
    # Fetch
    # -----------------------------------------------------------------------

    async def fetch(self, target: RemoteObject, options: RequestOptions) -> RemoteObject:
        if not target.id:
            raise MirrorError(ErrorCode.MISSING_OBJECT_ID, "Object does not have an ID")
        params: dict[str, Any] = {}
        include = _flatten_include(options.include)
        if include:
            params["include"] = ",".join(include)
        response = await self.rest.request("GET", f"classes/{target.class_name}/{target._get_id()}", params, options)
        target._clear_pending_ops()
        target._clear_server_data()
        target._finish_fetch(response)
        return target

    async def fetch_all(self, targets: list[RemoteObject], options: RequestOptions) -> list[RemoteObject]:
        """Fetch every object. All must share one class and have an id."""
        if not targets:
            return []
        class_name = targets[0].class_name
        for target in targets:
            if target.class_name != class_name:
                raise MirrorError(ErrorCode.INVALID_CLASS_NAME, "All objects should be of the same class")
            if not target.id:
                raise MirrorError(ErrorCode.MISSING_OBJECT_ID, "All objects must have an ID")
        await asyncio.gather(*(self.fetch(target, options) for target in targets))
        return list(targets)

    # -----------------------------------------------------------------------
    # Destroy
    # -----------------------------------------------------------------------

    def destroy(self, target: RemoteObject, options: RequestOptions) -> asyncio.Future:
        """Queue a DELETE behind any save in flight for the same object."""

        async def task() -> RemoteObject:
            await self.rest.request("DELETE", f"classes/{target.class_name}/{target._get_id()}", {}, options)
            return target

        return self.client.state.enqueue_task(target._state_identifier(), task)

    async def destroy_all(self, targets: list[RemoteObject], options: RequestOptions) -> list[RemoteObject]:
        """Delete saved objects in batches. Objects without an id are skipped."""
        if not targets:
            return []
        batch_size = self._batch_size(options)
        saved = [t for t in targets if t.id]
        errors: list[MirrorError] = []
        for start in range(0, len(saved), batch_size):
            batch = saved[start : start + batch_size]
            items = await self._request_batch(
                [
                    BatchRequestItem(
                        method="DELETE",
                        path=self._batch_path(f"classes/{obj.class_name}/{obj._get_id()}"),
                    )
                    for obj in batch
                ],
                options,
            )
            for obj, item in zip(batch, items):
                if item.error is not None:
                    error = MirrorError(item.error.code, item.error.error)
                    error.object = obj
                    logger.warning("controller: destroying %s failed: %s", obj, error)
                    errors.append(error)
        if errors:
            raise AggregateError(errors)
        return list(targets)

    # -----------------------------------------------------------------------
    # Files
    # -----------------------------------------------------------------------

    async def save_file(self, file: RemoteFile, options: RequestOptions) -> FileUploadResult:
        body: dict[str, Any] = {"base64": file.base64()}
        if file.content_type:
            body["_ContentType"] = file.content_type
        raw = await self.rest.request("POST", f"files/{file.name}", body, options)
        try:
            return FileUploadResult.model_validate(raw)
        except ValidationError as e:
            raise MirrorError(ErrorCode.INVALID_JSON, f"Malformed file upload response: {e}") from e
