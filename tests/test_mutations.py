from __future__ import annotations

import threading

import pytest

from schedoputer.errors import InvalidInput, NotFound, NotModifiable, NotUndoable
from schedoputer.jobs import create_job
from schedoputer.mutations import complete_human_task, modify_task, undo_task
from schedoputer.scheduler import Scheduler
from schedoputer.worker import ResourceInvoker


@pytest.fixture()
def job(store, clock):
    return create_job(store, "p", "00:00", clock=clock)


def test_modify_pending_task_merges_params(store, job) -> None:
    modify_task(store, job.id, "t1", {"tone": "dry"})
    modify_task(store, job.id, "t1", {"length": 300})
    assert job.task("t1").params == {"tone": "dry", "length": 300}


@pytest.mark.parametrize("status", ["blocked", "ready", "running", "waiting_human", "completed", "cancelled", "failed"])
@pytest.mark.parametrize("patch", [{"a": 1}, {}, None, [1, 2], "text"])
def test_modify_non_pending_task_is_refused(store, job, status, patch) -> None:
    job.task("t3").status = status
    with pytest.raises(NotModifiable):
        modify_task(store, job.id, "t3", patch)
    assert job.task("t3").params == {}


def test_modify_rejects_non_object_patch(store, job) -> None:
    with pytest.raises(InvalidInput):
        modify_task(store, job.id, "t1", ["not", "a", "dict"])


def test_modify_unknown_ids(store, job) -> None:
    with pytest.raises(NotFound):
        modify_task(store, "missing", "t1", {})
    with pytest.raises(NotFound):
        modify_task(store, job.id, "t9", {})


def test_undo_pending_undoable_task(store, job) -> None:
    job.task("t3").status = "pending"
    undo_task(store, job.id, "t3")
    assert job.task("t3").status == "cancelled"


def test_undo_blocked_task_is_refused(store, job) -> None:
    assert job.task("t4").undoable
    with pytest.raises(NotUndoable):
        undo_task(store, job.id, "t4")
    assert job.task("t4").status == "blocked"


@pytest.mark.parametrize("task_id", ["t1", "t2"])
def test_undo_non_undoable_task_is_refused(store, job, task_id) -> None:
    job.task(task_id).status = "pending"
    with pytest.raises(NotUndoable):
        undo_task(store, job.id, task_id)


def test_cancelled_task_cannot_be_modified_or_undone_again(store, job) -> None:
    job.task("t5").status = "pending"
    undo_task(store, job.id, "t5")
    with pytest.raises(NotUndoable):
        undo_task(store, job.id, "t5")
    with pytest.raises(NotModifiable):
        modify_task(store, job.id, "t5", {"x": 1})


def test_undo_unknown_ids(store, job) -> None:
    with pytest.raises(NotFound):
        undo_task(store, "missing", "t3")
    with pytest.raises(NotFound):
        undo_task(store, job.id, "nope")


def test_membership_unchanged_by_mutations(store, job) -> None:
    ids = [t.id for t in job.tasks]
    modify_task(store, job.id, "t1", {"a": 1})
    job.task("t3").status = "pending"
    undo_task(store, job.id, "t3")
    assert [t.id for t in job.tasks] == ids


def test_complete_human_task(store, job) -> None:
    job.state = "waiting_on_external"
    job.task("t2").status = "waiting_human"

    complete_human_task(store, job.id, "t2", {"url": "https://example.com/p/1"})

    assert job.task("t2").status == "completed"
    assert job.context["publication"] == {"url": "https://example.com/p/1"}
    assert job.state == "running"


def test_complete_human_task_requires_waiting(store, job) -> None:
    with pytest.raises(NotModifiable):
        complete_human_task(store, job.id, "t2", {})
    with pytest.raises(NotModifiable):
        complete_human_task(store, job.id, "t1", {})


class _GatedInvoker(ResourceInvoker):
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def invoke(self, resource, payload):
        self.started.set()
        self.release.wait(5)
        return {"text": "done"}


def test_modify_refused_while_scheduler_runs_task(store, job, clock) -> None:
    invoker = _GatedInvoker()
    scheduler = Scheduler(store, invoker, clock=clock)
    futures = scheduler.tick()
    try:
        assert invoker.started.wait(5)
        assert job.task("t1").status == "running"
        with pytest.raises(NotModifiable):
            modify_task(store, job.id, "t1", {"a": 1})
        with pytest.raises(NotUndoable):
            undo_task(store, job.id, "t1")
    finally:
        invoker.release.set()
        for future in futures:
            future.result(5)
        scheduler.stop()

    assert job.task("t1").status == "completed"
    assert job.task("t1").params == {}
