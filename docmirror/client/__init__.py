"""
docmirror client -- binds the kernel to a REST backend.

  config      -- Settings from DOCMIRROR_* environment variables
  rest        -- httpx transport
  controller  -- save/fetch/destroy orchestration, batch requests
  context     -- MirrorClient, the object every RemoteObject belongs to
  mock_rest   -- in-memory backend for tests
"""

from docmirror.client.config import Settings
from docmirror.client.context import MirrorClient
from docmirror.client.controller import ObjectController
from docmirror.client.mock_rest import MockRestController
from docmirror.client.rest import RestController

__all__ = [
    "MirrorClient",
    "MockRestController",
    "ObjectController",
    "RestController",
    "Settings",
]
