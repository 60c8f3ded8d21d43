"""Shared fixtures for admission tests."""

from types import SimpleNamespace
from typing import Optional

import pytest

from admission.app.services.window_store import LocalWindowStore


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(
    headers: Optional[dict] = None,
    host: Optional[str] = "127.0.0.1",
) -> SimpleNamespace:
    """Minimal request object exposing headers and client address."""
    client = SimpleNamespace(host=host) if host is not None else None
    return SimpleNamespace(headers=headers or {}, client=client)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local_store(clock) -> LocalWindowStore:
    return LocalWindowStore(shards=8, clock=clock)
