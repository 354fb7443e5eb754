"""Process-local tracking of proposal ingestion runs.

Each :class:`IngestionJob` is written by exactly one thread, the one running
the ingestion, and guarded by its own lock so status readers always receive a
consistent snapshot through :meth:`IngestionJob.to_dict`.
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config.settings import settings

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    STARTING = "starting"
    FETCHING_MESSAGES = "fetching_messages"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    JobStatus.STARTING: {JobStatus.FETCHING_MESSAGES, JobStatus.FAILED},
    JobStatus.FETCHING_MESSAGES: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class InvalidJobTransition(RuntimeError):
    def __init__(self, current: JobStatus, target: JobStatus) -> None:
        super().__init__(f"Cannot move job from {current.value} to {target.value}")
        self.current = current
        self.target = target


class IngestionJob:
    """Mutable progress record for one ingestion run."""

    def __init__(self, job_id: Optional[str] = None) -> None:
        self.id = job_id
        self.started_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self._lock = threading.Lock()
        self._status = JobStatus.STARTING
        self._total = 0
        self._current = 0
        self._processed = 0
        self._created = 0
        self._skipped = 0
        self._errors: List[Dict[str, str]] = []
        self._message: Optional[str] = None

    @property
    def status(self) -> JobStatus:
        with self._lock:
            return self._status

    @property
    def finished(self) -> bool:
        return self.status.terminal

    def _transition(self, target: JobStatus, message: Optional[str] = None) -> None:
        with self._lock:
            if target not in _ALLOWED_TRANSITIONS[self._status]:
                raise InvalidJobTransition(self._status, target)
            self._status = target
            if target.terminal:
                self.finished_at = datetime.now(timezone.utc)
            if message is not None:
                self._message = message

    def advance(self, target: JobStatus) -> None:
        self._transition(target)

    def set_total(self, total: int) -> None:
        with self._lock:
            self._total = total

    def begin_message(self, position: int) -> None:
        with self._lock:
            self._current = position

    def record_processed(self) -> None:
        with self._lock:
            self._processed += 1

    def record_created(self) -> None:
        with self._lock:
            self._created += 1

    def record_skipped(self) -> None:
        with self._lock:
            self._skipped += 1

    def record_error(self, subject: str, error: str) -> None:
        with self._lock:
            self._errors.append({"subject": subject, "error": error})

    def complete(self, message: str) -> None:
        self._transition(JobStatus.COMPLETED, message)

    def fail(self, message: str) -> None:
        self._transition(JobStatus.FAILED, message)

    @property
    def errors(self) -> List[Dict[str, str]]:
        with self._lock:
            return [dict(entry) for entry in self._errors]

    @property
    def message(self) -> Optional[str]:
        with self._lock:
            return self._message

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return {
                "seen": self._total,
                "processed": self._processed,
                "created": self._created,
                "skipped": self._skipped,
            }

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "status": self._status.value,
                "started_at": self.started_at.isoformat(),
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "total_messages": self._total,
                "current_message": self._current,
                "seen": self._total,
                "processed": self._processed,
                "created": self._created,
                "skipped": self._skipped,
                "errors": [dict(entry) for entry in self._errors],
                "message": self._message,
            }


class JobStore(ABC):
    """Mapping from job id to :class:`IngestionJob`."""

    @abstractmethod
    def create(self) -> IngestionJob:
        """Register and return a new job in the ``starting`` state."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[IngestionJob]:
        """Return the job or ``None`` if the id is unknown."""

    @abstractmethod
    def __len__(self) -> int:
        ...


class InMemoryJobStore(JobStore):
    """Bounded in-process store; finished jobs are evicted oldest first."""

    def __init__(self, retention_limit: Optional[int] = None) -> None:
        if retention_limit is None:
            retention_limit = settings.job_retention_limit
        if retention_limit < 1:
            raise ValueError("retention_limit must be at least 1")
        self.retention_limit = retention_limit
        self._jobs: "OrderedDict[str, IngestionJob]" = OrderedDict()
        self._lock = threading.Lock()
        self._sequence = 0

    def _next_id(self) -> str:
        self._sequence += 1
        return f"job_{int(time.time() * 1000)}_{self._sequence}"

    def _evict(self) -> None:
        while len(self._jobs) >= self.retention_limit:
            victim = next((job_id for job_id, job in self._jobs.items() if job.finished), None)
            if victim is None:
                # every retained job is still running; grow past the limit
                logger.warning(
                    "Job store holds %d running jobs; retention limit %d exceeded",
                    len(self._jobs),
                    self.retention_limit,
                )
                return
            del self._jobs[victim]
            logger.debug("Evicted finished job %s", victim)

    def create(self) -> IngestionJob:
        with self._lock:
            self._evict()
            job = IngestionJob(self._next_id())
            self._jobs[job.id] = job
            return job

    def get(self, job_id: str) -> Optional[IngestionJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class JobTracker:
    """Entry points for starting ingestion runs.

    ``runner`` receives the job to report progress into and performs the run.
    """

    def __init__(
        self,
        runner: Callable[[IngestionJob], Any],
        store: Optional[JobStore] = None,
    ) -> None:
        self._runner = runner
        self.store = store or InMemoryJobStore()

    def _execute(self, job: IngestionJob) -> None:
        try:
            self._runner(job)
        except Exception as exc:
            logger.exception("Ingestion job %s crashed", job.id)
            if not job.finished:
                job.fail(f"Ingestion failed: {exc}")

    def start(self) -> str:
        """Start a detached run and return its job id immediately."""

        job = self.store.create()
        thread = threading.Thread(
            target=self._execute,
            args=(job,),
            name=f"ingestion-{job.id}",
            daemon=True,
        )
        thread.start()
        logger.info("Started ingestion job %s", job.id)
        return job.id

    def status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.store.get(job_id)
        if job is None:
            return None
        return job.to_dict()

    def run_blocking(self) -> IngestionJob:
        """Run to completion on the calling thread without registering a job."""

        job = IngestionJob()
        self._execute(job)
        return job


__all__ = [
    "InMemoryJobStore",
    "IngestionJob",
    "InvalidJobTransition",
    "JobStatus",
    "JobStore",
    "JobTracker",
]
