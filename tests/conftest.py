"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from schedoputer.main import create_app
from schedoputer.scheduler import Scheduler
from schedoputer.storage import JobStore
from schedoputer.worker import ResourceInvoker

class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedInvoker(ResourceInvoker):
    """Returns queued outcomes per resource; exceptions in the queue are raised."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.outcomes: dict[str, list] = {}
        self.always: dict[str, object] = {}

    def queue(self, resource: str, *outcomes) -> None:
        self.outcomes.setdefault(resource, []).extend(outcomes)

    def invoke(self, resource, payload):
        self.calls.append((resource, payload))
        queued = self.outcomes.get(resource)
        outcome = queued.pop(0) if queued else self.always.get(resource, {"text": f"{resource} done"})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def store() -> JobStore:
    return JobStore()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture()
def scheduler(store, invoker, clock):
    sched = Scheduler(store, invoker, clock=clock, max_workers=2)
    yield sched
    sched.stop()


@pytest.fixture()
def client(store, scheduler, clock):
    app = create_app(store=store, scheduler=scheduler, clock=clock, run_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client
