"""Job progress reporting for long batch operations."""
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)

_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


class ProgressReporter(Protocol):
    def start(self, job_id: str, name: str, total_steps: int) -> None: ...

    def set_step(self, job_id: str, step: int, name: str, total_items: int | None = None) -> None: ...

    def update(self, job_id: str, current: int, total: int, item: str | None = None) -> None: ...

    def log(self, job_id: str, level: str, message: str) -> None: ...

    def complete(self, job_id: str, result: dict | None = None) -> None: ...

    def fail(self, job_id: str, error: str) -> None: ...


@dataclass
class JobState:
    job_id: str
    name: str
    total_steps: int
    status: str = 'running'
    step: int = 0
    step_name: str = ''
    current: int = 0
    total: int = 0
    current_item: str | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    result: dict | None = None
    error: str | None = None
    logs: list[tuple[str, str]] = field(default_factory=list)

    @property
    def percent(self) -> float:
        return 100.0 * self.current / self.total if self.total else 0.0


class JobProgress:
    """
    In-memory progress reporter that mirrors every log line to ``logging``.

    Args:
        max_logs: Per-job log lines kept in memory
        on_update: Optional callback fired with the JobState after each update
    """

    def __init__(self, max_logs: int = 500, on_update=None):
        self.jobs: dict[str, JobState] = {}
        self._max_logs = max_logs
        self._on_update = on_update

    def _job(self, job_id: str) -> JobState:
        if job_id not in self.jobs:
            self.jobs[job_id] = JobState(job_id, job_id, 0)
        return self.jobs[job_id]

    def _notify(self, job: JobState) -> None:
        if self._on_update is not None:
            self._on_update(job)

    def start(self, job_id: str, name: str, total_steps: int) -> None:
        self.jobs[job_id] = JobState(job_id, name, total_steps)
        logger.info(f"[{job_id}] {name} started")
        self._notify(self.jobs[job_id])

    def set_step(self, job_id: str, step: int, name: str, total_items: int | None = None) -> None:
        job = self._job(job_id)
        job.step, job.step_name = step, name
        job.current = 0
        job.total = total_items or 0
        logger.info(f"[{job_id}] step {step + 1}/{job.total_steps or '?'}: {name}")
        self._notify(job)

    def update(self, job_id: str, current: int, total: int, item: str | None = None) -> None:
        job = self._job(job_id)
        job.current, job.total, job.current_item = current, total, item
        self._notify(job)

    def log(self, job_id: str, level: str, message: str) -> None:
        job = self._job(job_id)
        job.logs.append((level, message))
        if len(job.logs) > self._max_logs:
            del job.logs[:len(job.logs) - self._max_logs]
        logger.log(_LEVELS.get(level.lower(), logging.INFO), f"[{job_id}] {message}")

    def complete(self, job_id: str, result: dict | None = None) -> None:
        job = self._job(job_id)
        job.status, job.result, job.finished_at = 'completed', result, time.time()
        logger.info(f"[{job_id}] completed in {job.finished_at - job.started_at:.1f}s")
        self._notify(job)

    def fail(self, job_id: str, error: str) -> None:
        job = self._job(job_id)
        job.status, job.error, job.finished_at = 'failed', error, time.time()
        logger.error(f"[{job_id}] failed: {error}")
        self._notify(job)
