"""Wire models for the REST API's error, batch and file payloads."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ErrorPayload(BaseModel):
    """What the server sends back when a request fails."""

    code: int
    error: str = ""


class BatchRequestItem(BaseModel):
    """One sub-request of POST batch."""

    model_config = {"extra": "forbid"}

    method: Literal["GET", "POST", "PUT", "DELETE"]
    path: str
    body: dict[str, Any] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    model_config = {"extra": "forbid"}

    requests: list[BatchRequestItem]


class BatchResultItem(BaseModel):
    """One entry of a batch response: either `success` or `error`."""

    success: dict[str, Any] | None = None
    error: ErrorPayload | None = None


class FileUploadResult(BaseModel):
    """What POST files/<name> returns."""

    name: str
    url: str
