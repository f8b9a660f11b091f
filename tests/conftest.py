"""Shared fixtures: a store on a temp directory wired to a mock HTTP transport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from hatzchat.client import HatzClient
from hatzchat.credentials import MemoryCredentialStore
from hatzchat.storage import ChatPersistence, SettingsPersistence
from hatzchat.store import ChatStore

BASE_URL = "https://api.test/v1"
FILES_URL = "https://api.test/v1/files/"


def make_client(api_key: str, handler) -> HatzClient:
    return HatzClient(
        api_key,
        base_url=BASE_URL,
        files_url=FILES_URL,
        transport=httpx.MockTransport(handler),
    )


def stream_body(*chunks: bytes, gate: asyncio.Event | None = None):
    """Async byte stream; if ``gate`` is given, waits on it after the chunks."""

    async def body():
        for chunk in chunks:
            yield chunk
            await asyncio.sleep(0)
        if gate is not None:
            await gate.wait()

    return body()


def chunk_line(message: str, prefix: str = "data: ") -> bytes:
    return (prefix + json.dumps({"type": "token", "message": message}, ensure_ascii=False) + "\n").encode()


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request: {request.method} {request.url}")


@pytest.fixture
def make_store(tmp_path):
    def factory(handler=_no_network, api_key: str | None = "test-key") -> ChatStore:
        store = ChatStore(
            ChatPersistence(tmp_path / "chats.json"),
            SettingsPersistence(tmp_path / "settings.json"),
            MemoryCredentialStore(api_key),
            client_factory=lambda key: make_client(key, handler),
        )
        store.load()
        return store

    return factory


@pytest.fixture
def chats_path(tmp_path):
    return tmp_path / "chats.json"


async def wait_for(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
