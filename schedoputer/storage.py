import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .models import Job


class JobStore:
    """In-memory job map, one lock per job.

    Jobs live for the lifetime of the process and are never removed. The map
    itself is guarded by its own lock; a job's fields are guarded by that
    job's lock, which both the scheduler and the mutation calls take before
    writing.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise KeyError(f"job {job.id} already exists")
            self._jobs[job.id] = job
            self._locks[job.id] = threading.Lock()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    @contextmanager
    def locked(self, job_id: str) -> Iterator[Optional[Job]]:
        """Hold the job's lock; yields None for an unknown id."""
        with self._lock:
            job = self._jobs.get(job_id)
            lock = self._locks.get(job_id)
        if job is None or lock is None:
            yield None
            return
        with lock:
            yield job
