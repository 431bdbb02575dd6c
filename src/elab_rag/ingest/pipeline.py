"""End-to-end ingest pipeline: crawl -> chunk -> fit -> upsert."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from hashlib import sha1
from pathlib import Path
from typing import Any

from elab_rag.config import CrawlerConfig, Settings
from elab_rag.ingest.chunker import TextChunker
from elab_rag.ingest.crawler import WebCrawler
from elab_rag.ingest.embedder import Embedder, TfidfEmbedder
from elab_rag.obs.timing import Timer
from elab_rag.retrieval.vector_store import VectorStore
from elab_rag.types import CrawledDocument, TextChunk, VectorRecord

logger = logging.getLogger(__name__)

SOURCE_KEY = "source"


@dataclass(slots=True)
class SourceReport:
    source: str
    documents: int = 0
    chunks: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class IngestReport:
    sources: list[SourceReport] = field(default_factory=list)
    indexed: int = 0
    duration_ms: float = 0.0

    @property
    def total_documents(self) -> int:
        return sum(source.documents for source in self.sources)

    @property
    def total_chunks(self) -> int:
        return sum(source.chunks for source in self.sources)

    @property
    def errors(self) -> list[str]:
        return [error for source in self.sources for error in source.errors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_documents": self.total_documents,
            "total_chunks": self.total_chunks,
            "indexed": self.indexed,
            "duration_ms": self.duration_ms,
            "sources": [asdict(source) for source in self.sources],
        }


class IngestPipeline:
    """Coordinates crawler, chunker, embedder and vector store stages.

    Each source is crawled in its own run so failures and counts are reported
    per source. Indexing is an exclusive phase guarded by a lock. A job
    replaces the records of the sources it crawled and keeps every other
    source's records:

    1. A new embedder is fitted on the kept records plus the new chunks.
       Pretrained embedders are reused as they are.
    2. When the embedding version is unchanged, stale records of the crawled
       sources are deleted and the new ones upserted in place.
    3. Otherwise the collection is cleared and everything is re-embedded.
       The vocabulary file is written and the store switched to the new
       embedder only after every batch was stored, so a failed job leaves
       searches on the previous model.

    Sources that produced no chunks keep their existing records, and a job
    with no chunks at all leaves the index untouched.
    """

    def __init__(
        self,
        *,
        vector_store: VectorStore,
        chunker: TextChunker | None = None,
        crawler_config: CrawlerConfig | None = None,
        crawler_factory: Callable[[CrawlerConfig], WebCrawler] | None = None,
        batch_size: int = 64,
        vocabulary_path: str | Path | None = None,
    ) -> None:
        self._chunker = chunker or TextChunker()
        self._crawler_config = crawler_config or CrawlerConfig()
        self._crawler_factory = crawler_factory or WebCrawler
        self._vector_store = vector_store
        self._batch_size = batch_size
        self._vocabulary_path = Path(vocabulary_path) if vocabulary_path else None
        self._index_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, vector_store: VectorStore) -> "IngestPipeline":
        return cls(
            vector_store=vector_store,
            chunker=TextChunker(settings.chunking),
            crawler_config=settings.crawler,
            batch_size=settings.vector_store.batch_size,
            vocabulary_path=settings.embedding.vocabulary_path,
        )

    def run(self, sources: list[str], *, crawler_config: CrawlerConfig | None = None) -> IngestReport:
        """Crawl `sources` and replace their records in the index.

        `crawler_config` overrides the pipeline's crawl limits for this run.
        Raises `VectorStoreUnavailableError` when the index phase cannot reach
        the vector database.
        """

        config = crawler_config or self._crawler_config
        report = IngestReport()
        records: list[VectorRecord] = []

        with Timer() as timer:
            for source in sources:
                source_report, source_records = self._collect(source, config)
                report.sources.append(source_report)
                records.extend(source_records)

            if records:
                crawled = {source.source for source in report.sources if source.chunks}
                report.indexed = self._index(crawled, records)
            else:
                logger.warning("No chunks produced from %d source(s); index left unchanged", len(sources))

        report.duration_ms = timer.elapsed_ms
        logger.info(
            "Ingest finished: %d documents, %d chunks, %d indexed in %.0f ms",
            report.total_documents,
            report.total_chunks,
            report.indexed,
            report.duration_ms,
        )
        return report

    def _collect(self, source: str, config: CrawlerConfig) -> tuple[SourceReport, list[VectorRecord]]:
        report = SourceReport(source=source)
        records: list[VectorRecord] = []
        crawler = self._crawler_factory(config)
        try:
            documents = crawler.crawl(source)
        except Exception as exc:
            logger.exception("Failed to crawl %s", source)
            report.errors.append(f"{source}: {exc}")
            return report, records
        finally:
            report.errors.extend(crawler.errors)
            crawler.close()

        report.documents = len(documents)
        for document in documents:
            chunks = self._chunker.create_chunks(document.content)
            logger.info("Document %s -> %d chunks", document.title, len(chunks))
            records.extend(build_records(document, chunks, source=source))
        report.chunks = len(records)
        return report, records

    def _index(self, crawled: set[str], records: list[VectorRecord]) -> int:
        store = self._vector_store
        with self._index_lock:
            existing = store.snapshot()
            new_ids = {record.id for record in records}
            kept = [
                record
                for record in existing
                if record.metadata.get(SOURCE_KEY) not in crawled and record.id not in new_ids
            ]
            stale = [
                record.id
                for record in existing
                if record.metadata.get(SOURCE_KEY) in crawled and record.id not in new_ids
            ]

            current = store.embedder
            embedder = current.retrained([record.content for record in kept + records])
            if current.is_fitted and embedder.version == current.version:
                store.delete(stale)
                return self._upsert(records, embedder)

            logger.info(
                "Embedding version changed to %s; re-indexing %d kept records", embedder.version, len(kept)
            )
            store.clear()
            indexed = self._upsert(records, embedder)
            self._upsert(kept, embedder)
            if self._vocabulary_path is not None and isinstance(embedder, TfidfEmbedder):
                embedder.save(self._vocabulary_path)
            store.use_embedder(embedder)
            return indexed

    def _upsert(self, records: list[VectorRecord], embedder: Embedder) -> int:
        indexed = 0
        for start in range(0, len(records), self._batch_size):
            batch = records[start : start + self._batch_size]
            indexed += self._vector_store.add_documents(batch, embedder)
            logger.info("Indexed %d/%d chunks", min(start + len(batch), len(records)), len(records))
        return indexed


def build_records(
    document: CrawledDocument, chunks: list[TextChunk], *, source: str | None = None
) -> list[VectorRecord]:
    """Vector records for one document; ids are stable per URL and chunk index.

    `source` is the seed the document was crawled from (the document URL by
    default); re-crawling that seed replaces these records.
    """

    url_key = sha1(document.url.encode("utf-8")).hexdigest()[:16]
    crawled_at = document.crawled_at.isoformat()
    return [
        VectorRecord(
            id=f"{url_key}-chunk-{chunk.index:04d}",
            content=chunk.content,
            metadata={
                "url": document.url,
                SOURCE_KEY: source or document.url,
                "title": document.title,
                "sourceType": document.source_type,
                "chunkIndex": chunk.index,
                "crawledAt": crawled_at,
                "startChar": chunk.start_char,
                "endChar": chunk.end_char,
            },
        )
        for chunk in chunks
    ]
