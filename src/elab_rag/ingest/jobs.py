"""Background crawl jobs running the ingest pipeline off the request path."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from elab_rag.config import CrawlerConfig
from elab_rag.ingest.pipeline import IngestPipeline

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class CrawlJob:
    job_id: str
    sources: list[str]
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    stats: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "started_at", "completed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class CrawlJobManager:
    """Queues crawl jobs on a small thread pool and tracks their state.

    Job records live in memory for the lifetime of the process.
    """

    def __init__(self, pipeline: IngestPipeline, *, max_workers: int = 2) -> None:
        self._pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="crawl-job")
        self._jobs: dict[str, CrawlJob] = {}
        self._futures: dict[str, Future[None]] = {}
        self._lock = threading.Lock()

    def submit(self, sources: list[str], *, crawler_config: CrawlerConfig | None = None) -> CrawlJob:
        job = CrawlJob(job_id=uuid.uuid4().hex, sources=list(sources))
        with self._lock:
            self._jobs[job.job_id] = job
            self._futures[job.job_id] = self._executor.submit(self._run, job, crawler_config)
        logger.info("Queued crawl job %s for %d source(s)", job.job_id, len(job.sources))
        return job

    def get(self, job_id: str) -> CrawlJob:
        """Return the job with `job_id`; raises KeyError when unknown."""

        with self._lock:
            return self._jobs[job_id]

    def list_recent(self, limit: int = 20) -> list[CrawlJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    def wait(self, job_id: str, timeout: float | None = None) -> CrawlJob:
        with self._lock:
            future = self._futures[job_id]
        future.result(timeout=timeout)
        return self.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _run(self, job: CrawlJob, crawler_config: CrawlerConfig | None) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc)
        logger.info("Crawl job %s started", job.job_id)
        try:
            report = self._pipeline.run(job.sources, crawler_config=crawler_config)
        except Exception as exc:
            logger.exception("Crawl job %s failed", job.job_id)
            job.errors.append(str(exc))
            job.completed_at = datetime.now(timezone.utc)
            job.status = JobStatus.FAILED
            return

        job.stats = report.to_dict()
        job.errors.extend(report.errors)
        job.completed_at = datetime.now(timezone.utc)
        job.status = JobStatus.COMPLETED
        logger.info("Crawl job %s completed", job.job_id)
