"""Background indexing jobs for the admin API.

Each indexing session runs as an ``asyncio.Task`` keyed by its session id.
The manager enforces one running session per source and turns cancel
requests into the tracker's cooperative cancel flag.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from observability.tracker import IndexingTracker
from pipelines.errors import SessionConflict, SessionNotFound
from pipelines.models import IndexingSession, SessionStatus
from pipelines.progressive import ProgressiveIndexer
from sources.loader import SourceConfig

logger = logging.getLogger(__name__)

# Builds an indexer for one job; receives the job parameters.
IndexerFactory = Callable[[Dict[str, Any]], ProgressiveIndexer]


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobRecord:
    """Job record for tracking a background indexing run."""
    id: str
    source: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def add_log(self, message: str):
        """Add a log message with timestamp."""
        timestamp = datetime.utcnow().isoformat()
        self.logs.append(f"[{timestamp}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['status'] = self.status.value
        for name in ['created_at', 'started_at', 'completed_at']:
            if data[name]:
                data[name] = data[name].isoformat()
        return data


class IndexingJobManager:
    """Runs indexing sessions in the background and tracks their tasks."""

    def __init__(self, tracker: IndexingTracker, indexer_factory: IndexerFactory):
        self.tracker = tracker
        self.indexer_factory = indexer_factory
        self._jobs: Dict[str, JobRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def running_job_for(self, source_key: str) -> Optional[JobRecord]:
        for job_id, task in self._tasks.items():
            job = self._jobs[job_id]
            if job.source == source_key and not task.done():
                return job
        return None

    async def start_indexing(self, source: SourceConfig, max_pages: Optional[int] = None,
                             cost_budget: Optional[float] = None,
                             test_mode: bool = False) -> IndexingSession:
        """Register a session and start processing it in the background.

        Returns immediately with the running session.

        Raises:
            SessionConflict: if the source already has a running session
        """
        active = self.tracker.active_session_for(source.name)
        if active is not None:
            raise SessionConflict(
                f"Source '{source.name}' already has a running session {active.session_id}"
            )
        job = self.running_job_for(source.name)
        if job is not None:
            raise SessionConflict(f"Source '{source.name}' already has a running job {job.id}")

        parameters = {
            "source": source.name,
            "max_pages": max_pages,
            "cost_budget": cost_budget,
            "test_mode": test_mode,
        }
        indexer = self.indexer_factory(parameters)
        session = indexer.start_session(source, max_pages=max_pages, cost_budget=cost_budget)

        job = JobRecord(
            id=session.session_id,
            source=source.name,
            status=JobStatus.QUEUED,
            created_at=datetime.utcnow(),
            parameters=parameters,
        )
        job.add_log("Job enqueued")
        self._jobs[job.id] = job
        self._tasks[job.id] = asyncio.create_task(self._execute_job(job, indexer, source))

        logger.info(f"Enqueued indexing job {job.id} for source {source.name}")
        return session

    async def _execute_job(self, job: JobRecord, indexer: ProgressiveIndexer, source: SourceConfig):
        job.status = JobStatus.RUNNING
        job.started_at = datetime.utcnow()
        job.add_log("Job started")

        try:
            session = await indexer.run_session(job.id, source)
            job.result = session.to_dict()
            if session.status == SessionStatus.CANCELLED:
                job.status = JobStatus.CANCELLED
            elif session.status == SessionStatus.FAILED:
                job.status = JobStatus.FAILED
                job.error = session.stop_reason
            else:
                job.status = JobStatus.DONE
            job.add_log(f"Session ended {session.status.value}")

        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            job.add_log("Job task cancelled")
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.add_log(f"Job failed: {e}")
            logger.error(f"Job {job.id} failed: {e}")
        finally:
            job.completed_at = datetime.utcnow()
            self._tasks.pop(job.id, None)

    async def cancel(self, session_id: str, force: bool = False) -> IndexingSession:
        """Ask a session to stop after its current URL.

        With ``force`` the background task is also cancelled outright.

        Raises:
            SessionNotFound: if the session does not exist
        """
        session = self.tracker.request_cancel(session_id)
        job = self._jobs.get(session_id)
        if job is not None:
            job.add_log("Cancel requested")

        task = self._tasks.get(session_id)
        if force and task is not None and not task.done():
            task.cancel()
        logger.info(f"Cancel requested for session {session_id} (force={force})")
        return session

    def get_job(self, job_id: str) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise SessionNotFound(job_id)
        return job

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> None:
        """Wait for a job's task to finish, if it is still running."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)

    async def shutdown(self):
        """Cancel every running task and wait for them to settle."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Job manager shutdown complete ({len(tasks)} tasks cancelled)")
