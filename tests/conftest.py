from __future__ import annotations

import fakeredis
import pytest

from depthwise.services import database


@pytest.fixture
def fake_redis(monkeypatch):
    """In-memory Redis swapped in for the shared client."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    monkeypatch.setattr(database, "_client", client)
    return client
