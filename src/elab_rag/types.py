"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class CrawledDocument:
    """A fetched page reduced to title, readable text and outbound links."""

    url: str
    title: str
    content: str
    source_type: str
    crawled_at: datetime
    links: list[str] = field(default_factory=list)

    @property
    def content_length(self) -> int:
        return len(self.content)


@dataclass(slots=True)
class CrawlStats:
    total_documents: int
    total_urls: int
    average_content_length: float
    source_types: dict[str, int]


@dataclass(slots=True)
class TextChunk:
    """A contiguous slice of a document's text.

    `start_char` and `end_char` index into the source text, so
    `text[chunk.start_char:chunk.end_char] == chunk.content`.
    """

    content: str
    index: int
    start_char: int
    end_char: int
    word_count: int


@dataclass(slots=True)
class ChunkStats:
    total_chunks: int
    average_chunk_size: float
    average_word_count: float
    total_characters: int


@dataclass(slots=True)
class VectorRecord:
    """A chunk ready for indexing."""

    id: str
    content: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class SearchResult:
    """A nearest-neighbour hit; `relevance_score` is `1 - distance`."""

    id: str
    content: str
    metadata: dict[str, Any]
    distance: float
    relevance_score: float


@dataclass(slots=True)
class RAGContext:
    content: str
    url: str
    title: str
    relevance_score: float


@dataclass(slots=True)
class SourceRef:
    url: str
    title: str
    relevance_score: float


@dataclass(slots=True)
class RagAnswer:
    """Answer returned to the request layer for one question."""

    answer: str
    sources: list[SourceRef]
    processing_time_ms: float
    degraded: bool = False
    model: str | None = None
