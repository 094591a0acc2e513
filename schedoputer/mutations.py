"""Out-of-band edits to a job's tasks.

Every check and write happens under the job's lock, so a task the scheduler
has just picked up is seen as ``running`` and the edit is refused.
"""

import logging
from typing import Any, Dict

from .errors import InvalidInput, NotFound, NotModifiable, NotUndoable
from .storage import JobStore


def modify_task(store: JobStore, job_id: str, task_id: str, patch: Dict[str, Any]) -> None:
    with store.locked(job_id) as job:
        if job is None:
            raise NotFound("job not found")
        task = job.task(task_id)
        if task is None:
            raise NotFound("task not found")
        if task.status != "pending":
            raise NotModifiable(f"task {task_id} is {task.status}, only pending tasks can be modified")
        if not isinstance(patch, dict):
            raise InvalidInput("patch must be a JSON object")
        task.params = {**task.params, **patch}
    logging.info("job %s task %s params updated: %s", job_id, task_id, sorted(patch))


def undo_task(store: JobStore, job_id: str, task_id: str) -> None:
    with store.locked(job_id) as job:
        if job is None:
            raise NotFound("job not found")
        task = job.task(task_id)
        if task is None:
            raise NotFound("task not found")
        if not task.undoable:
            raise NotUndoable(f"task {task_id} cannot be undone")
        if task.status != "pending":
            raise NotUndoable(f"task {task_id} is {task.status}, only pending tasks can be undone")
        task.status = "cancelled"
    logging.info("job %s task %s cancelled", job_id, task_id)


def complete_human_task(store: JobStore, job_id: str, task_id: str, result: Any = None) -> None:
    """Record the outcome of a task that was handed to a human."""
    with store.locked(job_id) as job:
        if job is None:
            raise NotFound("job not found")
        task = job.task(task_id)
        if task is None:
            raise NotFound("task not found")
        if task.status != "waiting_human":
            raise NotModifiable(f"task {task_id} is {task.status}, not waiting for a human")
        task.status = "completed"
        job.context[task.output_key] = result if result is not None else {"completed": True}
        if job.state == "waiting_on_external":
            job.state = "running"
    logging.info("job %s task %s completed by external actor", job_id, task_id)
