import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from .errors import InvalidInput
from .models import Job, JobStatus, Task, TaskView
from .storage import JobStore

Clock = Callable[[], datetime]

_HHMM = re.compile(r"^\s*([0-9]+):([0-9]+)\s*$")

# (id, name, resource, depends_on, undoable, output_key)
TASK_GRAPH: List[Tuple[str, str, Optional[str], Optional[str], bool, str]] = [
    ("t1", "Generate content", "content", None, False, "content"),
    ("t2", "Publish post", None, "t1", False, "publication"),
    ("t3", "Research follow-up", "research", "t2", True, "research"),
    ("t4", "Draft replies", "replies", "t2", True, "replies"),
    ("t5", "Summarize engagement", "summary", "t2", True, "summary"),
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_delay(value) -> timedelta:
    """Parse an ``HH:MM`` delay. Minutes are not capped at 59."""
    if not isinstance(value, str):
        raise InvalidInput("schedule_hhmm must be a string in HH:MM format")
    match = _HHMM.match(value)
    if not match:
        raise InvalidInput("schedule_hhmm must be in HH:MM format")
    try:
        hours, minutes = int(match.group(1)), int(match.group(2))
        return timedelta(minutes=hours * 60 + minutes)
    except (OverflowError, ValueError) as exc:
        raise InvalidInput("schedule_hhmm out of range") from exc


def build_tasks(graph=TASK_GRAPH) -> List[Task]:
    tasks = []
    for task_id, name, resource, depends_on, undoable, output_key in graph:
        tasks.append(
            Task(
                id=task_id,
                name=name,
                resource=resource,
                depends_on=depends_on,
                undoable=undoable,
                output_key=output_key,
                status="blocked" if depends_on else "pending",
            )
        )
    return tasks


def create_job(store: JobStore, prompt, schedule_hhmm, clock: Clock = utc_now) -> Job:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidInput("prompt is required")
    delay = parse_delay(schedule_hhmm)

    now = clock()
    try:
        scheduled_for = now + delay
    except OverflowError as exc:
        raise InvalidInput("schedule_hhmm out of range") from exc
    job = Job(
        id=uuid.uuid4().hex,
        prompt=prompt,
        created_at=now,
        scheduled_for=scheduled_for,
        tasks=build_tasks(),
    )
    store.add(job)
    logging.info("job %s created, scheduled for %s", job.id, job.scheduled_for.isoformat())
    return job


def get_status(store: JobStore, job_id: str) -> Optional[JobStatus]:
    """Snapshot of a job, or None when the id is unknown."""
    with store.locked(job_id) as job:
        if job is None:
            return None
        return JobStatus(
            state=job.state,
            tasks=[TaskView(id=t.id, status=t.status) for t in job.tasks],
            context=dict(job.context),
            error=job.error,
        )


def not_found_status() -> JobStatus:
    return JobStatus(state="failed", error="job not found")
