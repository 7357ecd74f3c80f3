"""Test utilities for perch routers.

Provides an in-memory request event, a queue-fed request server and a
test client::

    from perch.testing import MemoryRequestServer, MockRequestEvent, TestClient
"""

from perch.testing.client import TestClient
from perch.testing.events import MockRequestEvent
from perch.testing.server import MemoryRequestServer

__all__ = [
    "MemoryRequestServer",
    "MockRequestEvent",
    "TestClient",
]
