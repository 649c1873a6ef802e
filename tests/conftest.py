"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from paramedic.config import Settings
from paramedic.health.events import LifecycleEvent
from paramedic.health.scheduler import Server


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class SwitchProbe:
    """Sync probe whose next outcome is set by the test.

    kind "done" calls done(error), kind "warn" calls warn(error).
    """

    def __init__(self) -> None:
        self.kind = "done"
        self.error: Any = None
        self.calls = 0

    def set(self, kind: str, error: Any = None) -> None:
        self.kind = kind
        self.error = error

    def __call__(self, done, warn) -> None:
        self.calls += 1
        handle = done if self.kind == "done" else warn
        handle(self.error)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None, default_interval_ms=5000, probe_timeout_ms=0)


@pytest.fixture
def server(config: Settings, clock: FakeClock) -> Server:
    return Server(config, clock=clock)


@pytest.fixture
def probe() -> SwitchProbe:
    return SwitchProbe()


@pytest.fixture
def events(server: Server) -> list[tuple[str, tuple[Any, ...]]]:
    """Every lifecycle event the server emits, as (name, args)."""
    seen: list[tuple[str, tuple[Any, ...]]] = []
    for event in LifecycleEvent:
        server.on(event, lambda *args, _name=event.value: seen.append((_name, args)))
    return seen
