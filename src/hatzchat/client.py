"""Async HTTP client for the Hatz chat API."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from .config import (
    API_BASE_URL,
    API_KEY_HEADER,
    CONNECT_TIMEOUT_SECONDS,
    FILES_URL,
    WRITE_TIMEOUT_SECONDS,
)
from .errors import AuthError, DecodeError, HttpError, TransportError
from .models import AIModel, CompletionResponse, FilesResponse, ModelsResponse, RemoteFile
from .streaming import iter_deltas

logger = logging.getLogger(__name__)

_UUID_PATTERN = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
    re.IGNORECASE,
)


def first_uuid(text: str) -> str | None:
    """Return the first UUID-looking token in ``text``.

    The upload response schema is undocumented, so this is a heuristic: any
    UUID echoed back in the body would match too.
    """
    match = _UUID_PATTERN.search(text)
    return match.group(0) if match else None


def _require_ok(response: httpx.Response, error_cls: type[HttpError] = HttpError):
    if not 200 <= response.status_code < 300:
        raise error_cls(response.status_code, response.text)


def _decode(model: type[BaseModel], response: httpx.Response) -> Any:
    try:
        return model.model_validate_json(response.content)
    except ValidationError as e:
        raise DecodeError(f"Unexpected response from {response.request.url}: {e}") from e


class HatzClient:
    """Thin wrapper over ``httpx.AsyncClient``; one instance per API key."""

    def __init__(
        self,
        api_key: str,
        base_url: str = API_BASE_URL,
        files_url: str = FILES_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.files_url = files_url
        self._transport = transport

    def _http(self, read_timeout: float | None = 60.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={API_KEY_HEADER: self.api_key, "Accept": "application/json"},
            timeout=httpx.Timeout(
                connect=CONNECT_TIMEOUT_SECONDS,
                read=read_timeout,
                write=WRITE_TIMEOUT_SECONDS,
                pool=CONNECT_TIMEOUT_SECONDS,
            ),
            transport=self._transport,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        async with self._http() as http:
            try:
                return await http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                raise TransportError(f"{method} {url} failed: {e}") from e

    async def list_models(self) -> list[AIModel]:
        response = await self._request("GET", self._url("chat/models"))
        _require_ok(response, AuthError)
        return _decode(ModelsResponse, response).data

    async def list_files(self) -> list[RemoteFile]:
        response = await self._request("GET", self.files_url)
        _require_ok(response)
        return _decode(FilesResponse, response).data

    async def upload_file(
        self, data: bytes, filename: str, mime_type: str
    ) -> tuple[str, str | None]:
        """Upload a file and return ``(raw_body, file_uuid)``.

        ``file_uuid`` is None when nothing UUID-shaped is in the response.
        """
        response = await self._request(
            "POST",
            self._url("files/upload"),
            files={"file": (filename, data, mime_type)},
        )
        _require_ok(response)
        raw = response.text
        extracted = first_uuid(raw)
        if extracted is None:
            logger.warning("Upload of %s returned no recognisable file id", filename)
        return raw, extracted

    async def chat_complete(
        self,
        model: str,
        messages: list[dict[str, str]],
        file_uuids: list[str],
        stream: bool,
        on_delta: Callable[[str], None] | None = None,
    ) -> str:
        """Request a completion.

        Non-streaming returns the first choice's content. Streaming hands each
        delta to ``on_delta`` and returns an empty string once the stream ends.
        """
        url = self._url("chat/completions")
        payload = {
            "model": model,
            "messages": messages,
            "stream": stream,
            "auto_tool_selection": True,
            "file_uuids": file_uuids,
        }

        if not stream:
            response = await self._request("POST", url, json=payload)
            _require_ok(response)
            decoded = _decode(CompletionResponse, response)
            return decoded.choices[0].message.content if decoded.choices else ""

        # Streams may pause for a long time between tokens
        async with self._http(read_timeout=None) as http:
            try:
                async with http.stream("POST", url, json=payload) as response:
                    if not 200 <= response.status_code < 300:
                        await response.aread()
                        raise HttpError(response.status_code, response.text)

                    async for delta in iter_deltas(response.aiter_bytes()):
                        if on_delta is not None:
                            on_delta(delta)
            except httpx.TransportError as e:
                raise TransportError(f"POST {url} failed: {e}") from e

        return ""
