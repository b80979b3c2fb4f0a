"""
Mock REST transport for deterministic testing.

An in-memory backend behind the same `request()` interface as
RestController. It stores records per class, applies wire ops the way the
server does, answers batch requests item by item, and records every request
it receives. Tests can hold requests in flight and inject failures.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from docmirror.kernel.errors import ErrorCode, MirrorError
from docmirror.kernel.types import RequestOptions, now_iso

Predicate = Callable[[str, str, dict[str, Any]], bool]


@dataclass
class RecordedRequest:
    method: str
    path: str
    body: dict[str, Any]
    options: RequestOptions


@dataclass
class _Rejection:
    predicate: Predicate
    code: int
    message: str
    once: bool


class MockRestController:
    """In-memory stand-in for the REST API."""

    def __init__(self, server_path: str = "/parse/"):
        self.server_path = server_path
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.files: dict[str, bytes] = {}
        self.requests: list[RecordedRequest] = []
        self._rejections: list[_Rejection] = []
        self._gate: asyncio.Event | None = None

    # -----------------------------------------------------------------------
    # Test controls
    # -----------------------------------------------------------------------

    def hold(self) -> None:
        """Park every request from now on until release() is called."""
        if self._gate is None:
            self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    def reject_when(
        self,
        predicate: Predicate,
        code: int = ErrorCode.INTERNAL_SERVER_ERROR,
        message: str = "Injected failure",
        once: bool = False,
    ) -> None:
        """
        Fail requests matching `predicate(method, path, body)`. Inside a
        batch the predicate sees each sub-request with the server path
        stripped, and only that item fails.
        """
        self._rejections.append(_Rejection(predicate, code, message, once))

    def seed(self, class_name: str, object_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Store a record as if it had been created earlier."""
        now = now_iso()
        record = {"objectId": object_id, "createdAt": now, "updatedAt": now, **copy.deepcopy(fields)}
        self.records.setdefault(class_name, {})[object_id] = record
        return record

    def requests_to(self, method: str, path_prefix: str = "") -> list[RecordedRequest]:
        return [r for r in self.requests if r.method == method and r.path.startswith(path_prefix)]

    # -----------------------------------------------------------------------
    # Transport interface
    # -----------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        options: RequestOptions | None = None,
    ) -> Any:
        options = options or RequestOptions()
        body = copy.deepcopy(body or {})
        self.requests.append(RecordedRequest(method, path, body, options))

        gate = self._gate
        if gate is not None:
            await gate.wait()
        # Suspend once, like a real round trip.
        await asyncio.sleep(0)

        self._check_rejections(method, path, body)
        if method == "POST" and path == "batch":
            return self._batch(body)
        response, status = self._dispatch(method, path, body)
        if options.return_status:
            response["_status"] = status
        return response

    async def aclose(self) -> None:
        self.release()

    # -----------------------------------------------------------------------
    # Backend behaviour
    # -----------------------------------------------------------------------

    def _check_rejections(self, method: str, path: str, body: dict[str, Any]) -> None:
        for rule in list(self._rejections):
            if rule.predicate(method, path, body):
                if rule.once:
                    self._rejections.remove(rule)
                raise MirrorError(rule.code, rule.message)

    def _batch(self, body: dict[str, Any]) -> list[dict[str, Any]]:
        results = []
        for sub in body.get("requests", []):
            path = sub["path"]
            if path.startswith(self.server_path):
                path = path[len(self.server_path) :]
            sub_body = sub.get("body") or {}
            try:
                self._check_rejections(sub["method"], path, sub_body)
                response, _ = self._dispatch(sub["method"], path, sub_body)
            except MirrorError as e:
                results.append({"error": {"code": e.code, "error": e.message}})
            else:
                results.append({"success": response})
        return results

    def _dispatch(self, method: str, path: str, body: dict[str, Any]) -> tuple[dict[str, Any], int]:
        parts = path.split("/")
        if parts[0] == "files" and method == "POST" and len(parts) == 2:
            return self._save_file(parts[1], body)
        if parts[0] != "classes" or len(parts) not in (2, 3):
            raise MirrorError(ErrorCode.INVALID_QUERY, f"Unknown path: {path}")
        class_name = parts[1]
        object_id = parts[2] if len(parts) == 3 else None
        if object_id is None:
            if method != "POST":
                raise MirrorError(ErrorCode.INVALID_QUERY, f"{method} needs an object id")
            return self._create(class_name, body)
        record = self.records.get(class_name, {}).get(object_id)
        if record is None:
            raise MirrorError(ErrorCode.OBJECT_NOT_FOUND, "Object not found.")
        if method == "GET":
            return copy.deepcopy(record), 200
        if method == "PUT":
            results = self._apply(record, body)
            record["updatedAt"] = now_iso()
            return {"updatedAt": record["updatedAt"], **results}, 200
        if method == "DELETE":
            del self.records[class_name][object_id]
            return {}, 200
        raise MirrorError(ErrorCode.INVALID_QUERY, f"Unsupported method: {method}")

    def _create(self, class_name: str, body: dict[str, Any]) -> tuple[dict[str, Any], int]:
        object_id = uuid.uuid4().hex[:10]
        now = now_iso()
        record: dict[str, Any] = {}
        results = self._apply(record, body)
        record.update({"objectId": object_id, "createdAt": now, "updatedAt": now})
        self.records.setdefault(class_name, {})[object_id] = record
        return {"objectId": object_id, "createdAt": now, **results}, 201

    def _save_file(self, name: str, body: dict[str, Any]) -> tuple[dict[str, Any], int]:
        stored = f"{uuid.uuid4().hex[:8]}_{name}"
        self.files[stored] = body.get("base64", "").encode("ascii")
        return {"name": stored, "url": f"https://files.example.test/{stored}"}, 201

    @staticmethod
    def _apply(record: dict[str, Any], body: dict[str, Any]) -> dict[str, Any]:
        """Apply a save body to a record. Returns the values of op-modified fields."""
        results: dict[str, Any] = {}
        for key, value in body.items():
            target, field = record, key
            if "." in key:
                *parents, field = key.split(".")
                for parent in parents:
                    target = target.setdefault(parent, {})
            if not (isinstance(value, dict) and "__op" in value):
                target[field] = value
                continue
            kind = value["__op"]
            current = target.get(field)
            if kind == "Delete":
                target.pop(field, None)
                continue
            if kind == "Increment":
                target[field] = (current or 0) + value["amount"]
            elif kind == "Add":
                target[field] = list(current or []) + value["objects"]
            elif kind == "AddUnique":
                merged = list(current or [])
                merged += [o for o in value["objects"] if o not in merged]
                target[field] = merged
            elif kind == "Remove":
                target[field] = [o for o in current or [] if o not in value["objects"]]
            elif kind in ("AddRelation", "RemoveRelation", "Batch"):
                ops = value["ops"] if kind == "Batch" else [value]
                class_name = next((o["className"] for op in ops for o in op["objects"]), None)
                target.setdefault(field, {"__type": "Relation", "className": class_name})
                continue
            else:
                raise MirrorError(ErrorCode.INVALID_JSON, f"Unknown op: {kind}")
            results[key] = copy.deepcopy(target[field])
        return results
