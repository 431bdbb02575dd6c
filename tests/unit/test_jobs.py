import pytest

from elab_rag.config import CrawlerConfig
from elab_rag.ingest.jobs import CrawlJobManager, JobStatus
from elab_rag.ingest.pipeline import IngestReport, SourceReport


class _RecordingPipeline:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], CrawlerConfig | None]] = []

    def run(self, sources, *, crawler_config=None):
        self.calls.append((sources, crawler_config))
        return IngestReport(
            sources=[SourceReport(source=s, documents=2, chunks=5, errors=[f"{s}/broken: 500"]) for s in sources],
            indexed=5 * len(sources),
        )


class _FailingPipeline:
    def run(self, sources, *, crawler_config=None):
        raise RuntimeError("vector store unavailable")


def test_job_completes_with_pipeline_stats() -> None:
    pipeline = _RecordingPipeline()
    manager = CrawlJobManager(pipeline)
    config = CrawlerConfig(max_pages=3)

    job = manager.submit(["https://elab.fon.bg.ac.rs"], crawler_config=config)
    finished = manager.wait(job.job_id, timeout=5)
    manager.shutdown()

    assert finished.status is JobStatus.COMPLETED
    assert finished.stats["total_documents"] == 2
    assert finished.stats["indexed"] == 5
    assert finished.errors == ["https://elab.fon.bg.ac.rs/broken: 500"]
    assert finished.started_at is not None and finished.completed_at is not None
    assert pipeline.calls == [(["https://elab.fon.bg.ac.rs"], config)]


def test_job_failure_is_recorded() -> None:
    manager = CrawlJobManager(_FailingPipeline())

    job = manager.submit(["https://elab.fon.bg.ac.rs"])
    finished = manager.wait(job.job_id, timeout=5)
    manager.shutdown()

    assert finished.status is JobStatus.FAILED
    assert finished.errors == ["vector store unavailable"]
    assert finished.to_dict()["status"] == "failed"


def test_jobs_are_listed_newest_first_and_serializable() -> None:
    manager = CrawlJobManager(_RecordingPipeline())

    first = manager.submit(["https://elab.fon.bg.ac.rs"])
    second = manager.submit(["https://ebt.rs"])
    manager.wait(first.job_id, timeout=5)
    manager.wait(second.job_id, timeout=5)
    manager.shutdown()

    recent = manager.list_recent()
    payload = recent[0].to_dict()

    assert {job.job_id for job in recent} == {first.job_id, second.job_id}
    assert recent[0].created_at >= recent[1].created_at
    assert isinstance(payload["created_at"], str)
    assert manager.get(first.job_id) is first


def test_unknown_job_raises_key_error() -> None:
    manager = CrawlJobManager(_RecordingPipeline())

    with pytest.raises(KeyError):
        manager.get("missing")
    manager.shutdown()
