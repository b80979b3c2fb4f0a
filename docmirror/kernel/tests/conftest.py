"""
Kernel test configuration.

Objects need a client to find their state store; the kernel tests use a
MirrorClient backed by the in-memory MockRestController, one per test.
"""

from __future__ import annotations

import pytest

from docmirror.client.config import Settings
from docmirror.client.context import MirrorClient
from docmirror.client.mock_rest import MockRestController


@pytest.fixture
def mock_rest():
    return MockRestController()


@pytest.fixture
def client(mock_rest):
    """Single-instance client (the default strategy)."""
    c = MirrorClient(Settings(application_id="test-app", server_url="http://localhost:1337/parse"), rest=mock_rest)
    yield c
    c.clear_all_state()


@pytest.fixture
def unique_client(mock_rest):
    """Client with one state per handle."""
    c = MirrorClient(
        Settings(application_id="test-app", server_url="http://localhost:1337/parse", single_instance=False),
        rest=mock_rest,
    )
    yield c
    c.clear_all_state()
