"""
Client test configuration.

Round trips go through MockRestController, an in-memory backend with the
same request() interface as the httpx transport.
"""

from __future__ import annotations

import asyncio

import pytest

from docmirror.client.config import Settings
from docmirror.client.context import MirrorClient
from docmirror.client.mock_rest import MockRestController

SERVER_URL = "http://localhost:1337/parse"


@pytest.fixture
def mock_rest():
    return MockRestController()


@pytest.fixture
def client(mock_rest):
    c = MirrorClient(Settings(application_id="test-app", server_url=SERVER_URL), rest=mock_rest)
    yield c
    c.clear_all_state()


@pytest.fixture
def unique_client(mock_rest):
    c = MirrorClient(
        Settings(application_id="test-app", server_url=SERVER_URL, single_instance=False),
        rest=mock_rest,
    )
    yield c
    c.clear_all_state()


@pytest.fixture
def drain():
    """Let queued tasks run until they block on the mock backend."""

    async def _drain(rounds: int = 10) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _drain
