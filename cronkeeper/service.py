"""
CronService: background polling loop, job execution and the admin API.

One ReadWriteLock guards the store and every job in it. Handlers run on the
loop thread outside the lock, one job at a time; a handler that never
returns stalls the schedule. Errors from steady-state work (reloading after
an outside edit, saving after a run) are logged and passed to ``on_error``
instead of being raised.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from typing import Callable, List, Optional

from cronkeeper.errors import CronKeeperError, LoadError, PersistError
from cronkeeper.models import (
    KIND_AT,
    STATUS_ERROR,
    STATUS_OK,
    Job,
    JobState,
    Payload,
    Schedule,
    SchedulerStatus,
)
from cronkeeper.rwlock import ReadWriteLock
from cronkeeper.schedule import compute_next_run
from cronkeeper.store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 1.0
DEFAULT_STOP_TIMEOUT_SECONDS = 5.0
MAX_ID_ATTEMPTS = 100

JobHandler = Callable[[Job], Optional[str]]
ErrorHook = Callable[[str, Exception], None]
Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_job_id() -> str:
    return uuid.uuid4().hex[:16]


class CronService:
    """Runs jobs from a JobStore when they fall due.

    ``handler(job)`` receives a copy of the due job. Its return value is
    ignored; raising marks the run as failed without disabling the job.
    ``on_error(stage, exc)`` is called for swallowed failures, with stage
    ``"load"``, ``"reload"`` or ``"persist"``.
    Pass ``load_store=False`` to skip the best-effort load at construction
    when the caller loads explicitly.
    """

    def __init__(
        self,
        store: JobStore,
        handler: Optional[JobHandler] = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        on_error: Optional[ErrorHook] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
        load_store: bool = True,
    ) -> None:
        if tick_seconds <= 0:
            raise CronKeeperError("tick_seconds must be > 0")
        self.store = store
        self.tick_seconds = tick_seconds
        self._handler = handler
        self._on_error = on_error
        self._clock: Clock = clock or now_ms
        self._id_factory = id_factory or new_job_id
        self._lock = ReadWriteLock()
        self._running = False
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

        if load_store:
            try:
                self.store.load()
            except LoadError as exc:
                self._report("load", exc)

    def set_handler(self, handler: Optional[JobHandler]) -> None:
        self._handler = handler

    @property
    def running(self) -> bool:
        with self._lock.read():
            return self._running

    # === Lifecycle ===

    def start(self) -> None:
        """Load the store, refresh next run times and start the loop thread.

        Raises LoadError or PersistError. Does nothing if already running.
        """
        with self._lock.write():
            if self._running:
                return
            self.store.load()
            self._recompute_next_runs()
            self.store.save()

            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run_loop,
                args=(stop_event,),
                daemon=True,
                name="cronkeeper-loop",
            )
            self._stop_event = stop_event
            self._thread = thread
            self._running = True
            thread.start()
            job_count = len(self.store.jobs)
        logger.info(
            "Scheduler started with %s job(s), store=%s, tick_seconds=%s",
            job_count,
            self.store.path,
            self.tick_seconds,
        )

    def stop(self, timeout: Optional[float] = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
        """Signal the loop to exit and wait up to ``timeout`` for it.

        Safe to call repeatedly, and from inside a handler (no join then).
        """
        with self._lock.write():
            if not self._running:
                return
            self._running = False
            if self._stop_event is not None:
                self._stop_event.set()
            thread = self._thread
            self._stop_event = None
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Scheduler stopped")

    def _run_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.tick_seconds):
            try:
                self.check_jobs()
            except Exception as exc:  # pragma: no cover - defensive
                logger.exception("Scheduler tick failed: %s", str(exc))

    # === Tick ===

    def check_jobs(self) -> int:
        """One tick: pick up outside edits, then run every due job in order.

        Returns the number of jobs that were due.
        """
        reload_error: Optional[LoadError] = None
        with self._lock.write():
            if not self._running:
                return 0
            try:
                if self.store.reconcile_if_changed():
                    self._recompute_next_runs()
                    logger.info(
                        "Reloaded %s job(s) after external change to %s",
                        len(self.store.jobs),
                        self.store.path,
                    )
            except LoadError as exc:
                reload_error = exc
            now = self._clock()
            due = [
                job.snapshot()
                for job in self.store.jobs
                if job.enabled and job.state.next_run_at_ms is not None and job.state.next_run_at_ms <= now
            ]
        if reload_error is not None:
            self._report("reload", reload_error)

        for job in due:
            self.execute_job(job)
        return len(due)

    def execute_job(self, job: Job) -> None:
        """Call the handler for ``job`` and apply the outcome to the stored job."""
        started = self._clock()
        logger.info("Running job %s (%s)", job.id, job.name)

        error: Optional[str] = None
        handler = self._handler
        if handler is not None:
            try:
                handler(job)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                logger.warning("Job %s (%s) failed: %s", job.id, job.name, error)

        persist_error: Optional[PersistError] = None
        with self._lock.write():
            current = self.store.find(job.id)
            if current is None:
                logger.info("Job %s (%s) no longer in store; result dropped", job.id, job.name)
                return
            self._apply_result(current, started, error)
            try:
                self.store.save()
            except PersistError as exc:
                persist_error = exc
        if persist_error is not None:
            self._report("persist", persist_error)

        if error is None:
            logger.info("Job %s (%s) finished", job.id, job.name)

    def _apply_result(self, job: Job, started_ms: int, error: Optional[str]) -> None:
        finished = self._clock()
        job.state.last_run_at_ms = started_ms
        job.updated_at_ms = finished
        if error is None:
            job.state.last_status = STATUS_OK
            job.state.last_error = None
        else:
            job.state.last_status = STATUS_ERROR
            job.state.last_error = error

        if job.schedule.kind == KIND_AT:
            if job.delete_after_run:
                self.store.remove(job.id)
                logger.info("Deleted one-shot job %s (%s)", job.id, job.name)
            else:
                job.enabled = False
                job.state.next_run_at_ms = None
            return

        if job.enabled:
            job.state.next_run_at_ms = compute_next_run(job.schedule, finished)
        else:
            job.state.next_run_at_ms = None

    def run_job_now(self, job_id: str) -> bool:
        """Run a job immediately, regardless of its schedule."""
        with self._lock.read():
            job = self.store.find(job_id)
            snapshot = job.snapshot() if job is not None else None
        if snapshot is None:
            return False
        self.execute_job(snapshot)
        return True

    # === Admin API ===

    def load(self) -> None:
        """Reload the store from disk. Raises LoadError."""
        with self._lock.write():
            self.store.load()
            self._recompute_next_runs()
            self.store.mark_synced()

    def add_job(
        self,
        name: str,
        schedule: Schedule,
        message: str,
        deliver: bool = False,
        channel: Optional[str] = None,
        to: Optional[str] = None,
        delete_after_run: bool = False,
    ) -> Job:
        with self._lock.write():
            now = self._clock()
            own_schedule = copy.copy(schedule)
            job = Job(
                id=self._unique_id(),
                name=name,
                enabled=True,
                schedule=own_schedule,
                payload=Payload(message=message, deliver=deliver, channel=channel, to=to),
                state=JobState(next_run_at_ms=compute_next_run(own_schedule, now)),
                created_at_ms=now,
                updated_at_ms=now,
                delete_after_run=delete_after_run,
            )
            self.store.append(job)
            try:
                self.store.save()
            except PersistError:
                self.store.remove(job.id)
                raise
            created = job.snapshot()
        logger.info("Added job %s (%s) kind=%s", created.id, created.name, created.schedule.kind)
        return created

    def remove_job(self, job_id: str) -> bool:
        with self._lock.write():
            previous = list(self.store.jobs)
            removed = self.store.remove(job_id)
            if removed:
                try:
                    self.store.save()
                except PersistError:
                    self.store.data.jobs = previous
                    raise
        if removed:
            logger.info("Removed job %s", job_id)
        return removed

    def enable_job(self, job_id: str, enabled: bool) -> Optional[Job]:
        with self._lock.write():
            job = self.store.find(job_id)
            if job is None:
                return None
            now = self._clock()
            previous = job.snapshot()
            job.enabled = enabled
            job.updated_at_ms = now
            if enabled:
                job.state.next_run_at_ms = compute_next_run(job.schedule, now)
            else:
                job.state.next_run_at_ms = None
            try:
                self.store.save()
            except PersistError:
                job.enabled = previous.enabled
                job.updated_at_ms = previous.updated_at_ms
                job.state = previous.state
                raise
            updated = job.snapshot()
        logger.info("Job %s (%s) enabled=%s", updated.id, updated.name, enabled)
        return updated

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock.read():
            job = self.store.find(job_id)
            return job.snapshot() if job is not None else None

    def list_jobs(self, include_disabled: bool = False) -> List[Job]:
        with self._lock.read():
            return [job.snapshot() for job in self.store.jobs if include_disabled or job.enabled]

    def status(self) -> SchedulerStatus:
        with self._lock.read():
            return SchedulerStatus(
                running=self._running,
                job_count=len(self.store.jobs),
                next_wake_at_ms=next_wake_at_ms(self.store.jobs),
            )

    # === Helpers (write lock held) ===

    def _recompute_next_runs(self) -> None:
        now = self._clock()
        for job in self.store.jobs:
            if job.enabled:
                job.state.next_run_at_ms = compute_next_run(job.schedule, now)
            else:
                job.state.next_run_at_ms = None

    def _unique_id(self) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            candidate = self._id_factory()
            if candidate and not self.store.has_id(candidate):
                return candidate
        raise CronKeeperError(f"Could not generate a unique job id after {MAX_ID_ATTEMPTS} attempts.")

    def _report(self, stage: str, exc: Exception) -> None:
        logger.warning("Ignoring %s failure: %s", stage, str(exc))
        if self._on_error is None:
            return
        try:
            self._on_error(stage, exc)
        except Exception as hook_exc:  # pragma: no cover - defensive
            logger.warning("Error hook failed: %s", str(hook_exc))


def next_wake_at_ms(jobs: List[Job]) -> Optional[int]:
    earliest: Optional[int] = None
    for job in jobs:
        nxt = job.state.next_run_at_ms
        if not job.enabled or nxt is None:
            continue
        if earliest is None or nxt < earliest:
            earliest = nxt
    return earliest
