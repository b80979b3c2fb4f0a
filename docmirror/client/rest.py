"""HTTP transport for the REST API."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from docmirror.client.config import Settings
from docmirror.client.models import ErrorPayload
from docmirror.kernel.errors import ErrorCode, MirrorError
from docmirror.kernel.types import RequestOptions

logger = logging.getLogger(__name__)

APPLICATION_ID_HEADER = "X-Parse-Application-Id"
CLIENT_KEY_HEADER = "X-Parse-Client-Key"
MASTER_KEY_HEADER = "X-Parse-Master-Key"
SESSION_TOKEN_HEADER = "X-Parse-Session-Token"
INSTALLATION_ID_HEADER = "X-Parse-Installation-Id"
CONTEXT_HEADER = "X-Parse-Cloud-Context"


class RestController:
    """
    Sends one request and returns the decoded JSON body.

    Every failure comes back as a MirrorError: transport problems as
    CONNECTION_FAILED, error responses with the code the server sent.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.SERVER_URL.rstrip("/") + "/",
                timeout=self.settings.REQUEST_TIMEOUT,
                transport=self._transport,
            )
        return self._client

    def _headers(self, options: RequestOptions) -> dict[str, str]:
        """Build request headers."""
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self.settings.REQUEST_HEADERS)
        headers[APPLICATION_ID_HEADER] = self.settings.APPLICATION_ID
        if self.settings.CLIENT_KEY:
            headers[CLIENT_KEY_HEADER] = self.settings.CLIENT_KEY
        use_master_key = (
            options.use_master_key if options.use_master_key is not None else self.settings.USE_MASTER_KEY
        )
        if use_master_key:
            if not self.settings.MASTER_KEY:
                raise MirrorError(ErrorCode.OTHER_CAUSE, "Cannot use the Master Key, it has not been provided.")
            headers[MASTER_KEY_HEADER] = self.settings.MASTER_KEY
        if options.session_token:
            headers[SESSION_TOKEN_HEADER] = options.session_token
        if options.installation_id:
            headers[INSTALLATION_ID_HEADER] = options.installation_id
        if options.context:
            headers[CONTEXT_HEADER] = json.dumps(options.context)
        return headers

    @staticmethod
    def _query_params(body: dict[str, Any]) -> dict[str, str]:
        params = {}
        for key, value in body.items():
            if isinstance(value, (dict, list)):
                params[key] = json.dumps(value)
            else:
                params[key] = str(value)
        return params

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Make a request. Returns the decoded response body."""
        options = options or RequestOptions()
        headers = self._headers(options)
        body = body or {}
        kwargs: dict[str, Any] = {"headers": headers}
        if method == "GET":
            kwargs["params"] = self._query_params(body)
        elif body or method in ("POST", "PUT"):
            kwargs["content"] = json.dumps(body)

        logger.debug("rest: %s %s", method, path)
        try:
            response = await self._http().request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.warning("rest: %s %s failed: %s", method, path, e)
            raise MirrorError(ErrorCode.CONNECTION_FAILED, f"Connection to the server failed: {e}") from e

        if response.status_code >= 400:
            raise self._error_from(response)

        try:
            data = response.json()
        except ValueError as e:
            raise MirrorError(ErrorCode.INVALID_JSON, f"Invalid JSON response: {response.text[:200]}") from e
        if options.return_status and isinstance(data, dict):
            data["_status"] = response.status_code
        return data

    @staticmethod
    def _error_from(response: httpx.Response) -> MirrorError:
        try:
            payload = ErrorPayload.model_validate(response.json())
        except (ValueError, ValidationError):
            return MirrorError(
                ErrorCode.INVALID_JSON,
                f"Received an error with invalid JSON from server: {response.text[:200]}",
            )
        logger.debug("rest: server error %s: %s", payload.code, payload.error)
        return MirrorError(payload.code, payload.error)

    async def aclose(self) -> None:
        """Close client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
