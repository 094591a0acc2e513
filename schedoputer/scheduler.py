import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import timedelta
from typing import List, Optional, Set

from .errors import ExternalFatal, ExternalTransient
from .jobs import Clock, utc_now
from .models import Job, Task
from .resolver import dependency_met, resolve
from .storage import JobStore
from .worker import ResourceInvoker, build_payload

SCHEDULER_INTERVAL_SEC = float(os.environ.get("SCHEDULER_INTERVAL_SEC", "30"))
SCHEDULER_MAX_WORKERS = int(os.environ.get("SCHEDULER_MAX_WORKERS", "8"))
RETRY_BACKOFF_BASE_SEC = float(os.environ.get("RETRY_BACKOFF_BASE_SEC", "0"))
RETRY_BACKOFF_MAX_SEC = float(os.environ.get("RETRY_BACKOFF_MAX_SEC", "300"))


def backoff_delay(base: float, attempts: int, cap: float) -> float:
    if base <= 0 or attempts <= 0:
        return 0.0
    return min(base * (2 ** (attempts - 1)), cap)


class Scheduler:
    """Periodic sweep that moves every stored job forward by at most one task.

    Each job is advanced on the thread pool, so a slow resource call for one
    job never holds up the others. A job whose previous advance is still in
    flight is skipped until it finishes.
    """

    def __init__(
        self,
        store: JobStore,
        invoker: ResourceInvoker,
        clock: Clock = utc_now,
        interval: float = SCHEDULER_INTERVAL_SEC,
        max_workers: int = SCHEDULER_MAX_WORKERS,
        backoff_base: float = RETRY_BACKOFF_BASE_SEC,
        backoff_max: float = RETRY_BACKOFF_MAX_SEC,
    ):
        self.store = store
        self.invoker = invoker
        self.clock = clock
        self.interval = interval
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_workers = max_workers

        self._pool: Optional[ThreadPoolExecutor] = None
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self, wait_for_jobs: bool = False) -> List[Future]:
        futures = []
        pool = self._ensure_pool()
        for job_id in self.store.job_ids():
            with self._in_flight_lock:
                if job_id in self._in_flight:
                    continue
                self._in_flight.add(job_id)
            try:
                futures.append(pool.submit(self._advance_guarded, job_id))
            except RuntimeError:
                with self._in_flight_lock:
                    self._in_flight.discard(job_id)
                raise
        if wait_for_jobs and futures:
            wait(futures)
        return futures

    def _ensure_pool(self) -> ThreadPoolExecutor:
        with self._in_flight_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="schedoputer")
            return self._pool

    def _advance_guarded(self, job_id: str) -> None:
        try:
            self.advance(job_id)
        except Exception:
            logging.exception("Unexpected error advancing job %s", job_id)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(job_id)

    def advance(self, job_id: str) -> None:
        with self.store.locked(job_id) as job:
            if job is None:
                return
            task = self._select(job)
            if task is None:
                return
            task.status = "running"
            if task.is_human:
                task.status = "waiting_human"
                job.state = "waiting_on_external"
                logging.info("job %s task %s waiting for a human", job.id, task.id)
                return
            task_id = task.id
            resource = task.resource
            payload = build_payload(job, task)
            logging.info("job %s task %s running against %s", job.id, task.id, resource)

        try:
            result = self.invoker.invoke(resource, payload)
        except ExternalTransient as exc:
            self._retry_later(job_id, task_id, exc.message)
        except ExternalFatal as exc:
            self._fail(job_id, task_id, exc.message)
        except Exception as exc:
            logging.exception("Resource %s raised for job %s task %s", resource, job_id, task_id)
            self._fail(job_id, task_id, str(exc) or exc.__class__.__name__)
        else:
            self._complete(job_id, task_id, result)

    def _select(self, job: Job) -> Optional[Task]:
        now = self.clock()
        if job.state == "scheduled" and now >= job.scheduled_for:
            job.state = "running"
            logging.info("job %s started", job.id)
        if job.state != "running":
            return None

        resolve(job.tasks)
        task = next((t for t in job.tasks if t.status == "pending"), None)
        if task is None:
            if all(t.is_terminal for t in job.tasks):
                job.state = "completed"
                logging.info("job %s completed", job.id)
            return None
        if not dependency_met(task, job.tasks):
            return None
        if task.not_before is not None and now < task.not_before:
            return None
        return task

    def _complete(self, job_id: str, task_id: str, result) -> None:
        with self.store.locked(job_id) as job:
            task = job.task(task_id)
            task.status = "completed"
            task.error = None
            job.context[task.output_key] = result
            logging.info("job %s task %s completed", job_id, task_id)

    def _retry_later(self, job_id: str, task_id: str, reason: str) -> None:
        with self.store.locked(job_id) as job:
            task = job.task(task_id)
            task.status = "pending"
            task.attempts += 1
            task.error = reason
            delay = backoff_delay(self.backoff_base, task.attempts, self.backoff_max)
            task.not_before = self.clock() + timedelta(seconds=delay) if delay else None
            logging.warning(
                "job %s task %s will retry (attempt %d): %s", job_id, task_id, task.attempts, reason
            )

    def _fail(self, job_id: str, task_id: str, reason: str) -> None:
        with self.store.locked(job_id) as job:
            task = job.task(task_id)
            task.status = "failed"
            task.error = reason
            job.state = "failed"
            job.error = f"task {task_id} failed: {reason}"
            logging.error("job %s failed: task %s: %s", job_id, task_id, reason)

    def run_forever(self) -> None:
        logging.info("Scheduler ticking every %.1fs", self.interval)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logging.exception("Scheduler tick failed")
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="schedoputer-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        with self._in_flight_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)
        self.invoker.close()
