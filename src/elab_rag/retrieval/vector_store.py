"""Vector store wrapper and collection backends."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlparse

from elab_rag.config import RetrievalConfig, Settings, VectorStoreConfig
from elab_rag.errors import EmbeddingVocabularyStaleError, VectorStoreUnavailableError
from elab_rag.ingest.embedder import Embedder, cosine_similarity, create_embedder
from elab_rag.types import SearchResult, VectorRecord

logger = logging.getLogger(__name__)

EMBEDDING_VERSION_KEY = "embeddingVersion"


@dataclass(slots=True)
class CollectionRecord:
    id: str
    document: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class CollectionHit:
    id: str
    document: str
    metadata: dict[str, Any]
    distance: float


class VectorCollection(Protocol):
    """Minimal collection contract the store needs from a vector database."""

    name: str
    location: str

    def open(self) -> None:
        """Open the collection, creating it if missing. Must be idempotent."""

    def drop(self) -> None:
        """Delete the collection and everything in it."""

    def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict[str, Any]],
    ) -> None:
        """Insert or overwrite records by id."""

    def query(
        self,
        embedding: list[float],
        n_results: int,
        where: dict[str, Any] | None = None,
    ) -> list[CollectionHit]:
        """Return up to `n_results` hits ordered by ascending cosine distance."""

    def records(self) -> list[CollectionRecord]:
        """Every stored record, without its embedding."""

    def delete(self, ids: list[str]) -> None:
        """Remove records by id; unknown ids are ignored."""

    def exists(self, where: dict[str, Any]) -> bool:
        """Whether any record matches the metadata filter."""

    def count(self) -> int:
        """Number of records in the collection."""


@dataclass(slots=True)
class _StoredVector:
    document: str
    embedding: list[float]
    metadata: dict[str, Any]


class InMemoryCollection:
    """Deterministic process-local collection used for tests and local prototyping."""

    location = "memory"

    def __init__(self, name: str = "elab_documents") -> None:
        self.name = name
        self._store: dict[str, _StoredVector] = {}
        self._lock = threading.Lock()

    def open(self) -> None:
        return None

    def drop(self) -> None:
        with self._lock:
            self._store = {}

    def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict[str, Any]],
    ) -> None:
        with self._lock:
            for record_id, embedding, document, metadata in zip(
                ids, embeddings, documents, metadatas, strict=True
            ):
                self._store[record_id] = _StoredVector(document, embedding, dict(metadata))

    def query(
        self,
        embedding: list[float],
        n_results: int,
        where: dict[str, Any] | None = None,
    ) -> list[CollectionHit]:
        with self._lock:
            candidates = list(self._store.items())
        hits = [
            CollectionHit(
                id=record_id,
                document=record.document,
                metadata=dict(record.metadata),
                distance=1.0 - cosine_similarity(embedding, record.embedding),
            )
            for record_id, record in candidates
            if _metadata_match(record.metadata, where)
        ]
        hits.sort(key=lambda hit: (hit.distance, hit.id))
        return hits[:n_results]

    def records(self) -> list[CollectionRecord]:
        with self._lock:
            return [
                CollectionRecord(record_id, record.document, dict(record.metadata))
                for record_id, record in self._store.items()
            ]

    def delete(self, ids: list[str]) -> None:
        with self._lock:
            for record_id in ids:
                self._store.pop(record_id, None)

    def exists(self, where: dict[str, Any]) -> bool:
        with self._lock:
            return any(_metadata_match(record.metadata, where) for record in self._store.values())

    def count(self) -> int:
        with self._lock:
            return len(self._store)


class ChromaCollection:
    """ChromaDB collection reached over HTTP, using cosine distance.

    The client is created on `open()` so that constructing the store never
    touches the network. Any client error is re-raised as
    `VectorStoreUnavailableError`.
    """

    def __init__(self, url: str, name: str, *, client: Any | None = None) -> None:
        self.name = name
        self.location = url
        self._client = client
        self._collection: Any | None = None

    def open(self) -> None:
        with self._unavailable_on_error("open collection"):
            if self._client is None:
                self._client = _create_http_client(self.location)
            self._collection = self._client.get_or_create_collection(
                name=self.name,
                embedding_function=None,
                metadata={
                    "hnsw:space": "cosine",
                    "description": "Institutional website chunk embeddings",
                },
            )
        logger.info("Chroma collection ready: %s at %s", self.name, self.location)

    def drop(self) -> None:
        with self._unavailable_on_error("delete collection"):
            self._client_or_raise().delete_collection(name=self.name)
        self._collection = None

    def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict[str, Any]],
    ) -> None:
        with self._unavailable_on_error("upsert"):
            self._collection_or_raise().upsert(
                ids=ids,
                embeddings=embeddings,
                documents=documents,
                metadatas=metadatas,
            )

    def query(
        self,
        embedding: list[float],
        n_results: int,
        where: dict[str, Any] | None = None,
    ) -> list[CollectionHit]:
        with self._unavailable_on_error("query"):
            results = self._collection_or_raise().query(
                query_embeddings=[embedding],
                n_results=n_results,
                where=where or None,
                include=["documents", "metadatas", "distances"],
            )

        ids = (results.get("ids") or [[]])[0]
        documents = (results.get("documents") or [[]])[0] or []
        metadatas = (results.get("metadatas") or [[]])[0] or []
        distances = (results.get("distances") or [[]])[0] or []
        hits: list[CollectionHit] = []
        for i, record_id in enumerate(ids):
            hits.append(
                CollectionHit(
                    id=str(record_id),
                    document=str(documents[i]) if i < len(documents) and documents[i] else "",
                    metadata=dict(metadatas[i] or {}) if i < len(metadatas) else {},
                    distance=float(distances[i]) if i < len(distances) else 1.0,
                )
            )
        return hits

    def records(self) -> list[CollectionRecord]:
        with self._unavailable_on_error("get"):
            results = self._collection_or_raise().get(include=["documents", "metadatas"])

        ids = results.get("ids") or []
        documents = results.get("documents") or []
        metadatas = results.get("metadatas") or []
        return [
            CollectionRecord(
                id=str(record_id),
                document=str(documents[i]) if i < len(documents) and documents[i] else "",
                metadata=dict(metadatas[i] or {}) if i < len(metadatas) else {},
            )
            for i, record_id in enumerate(ids)
        ]

    def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        with self._unavailable_on_error("delete"):
            self._collection_or_raise().delete(ids=ids)

    def exists(self, where: dict[str, Any]) -> bool:
        with self._unavailable_on_error("get"):
            results = self._collection_or_raise().get(where=where, limit=1, include=[])
        return bool(results.get("ids"))

    def count(self) -> int:
        with self._unavailable_on_error("count"):
            return int(self._collection_or_raise().count())

    def _client_or_raise(self) -> Any:
        if self._client is None:
            raise VectorStoreUnavailableError("Chroma client not connected; call open() first")
        return self._client

    def _collection_or_raise(self) -> Any:
        if self._collection is None:
            raise VectorStoreUnavailableError(
                f"Collection {self.name!r} not initialized; call open() first"
            )
        return self._collection

    @contextmanager
    def _unavailable_on_error(self, operation: str) -> Iterator[None]:
        try:
            yield
        except VectorStoreUnavailableError:
            raise
        except Exception as exc:
            raise VectorStoreUnavailableError(
                f"Chroma {operation} failed for {self.name!r} at {self.location}: {exc}"
            ) from exc


class VectorStore:
    """Embeds chunks and serves nearest-neighbour search over one collection.

    Ingestion is two-phase: an embedder is fitted once on the whole corpus,
    then `add_documents()` embeds and upserts batches with that fixed model.
    Each record is tagged with the embedder's version and search only looks
    at records of the current version, so vectors from different training
    runs are never compared. A collection holding only records of another
    version raises `EmbeddingVocabularyStaleError` instead of answering.
    """

    def __init__(
        self,
        collection: VectorCollection,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.collection = collection
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    def initialize(self) -> None:
        self.collection.open()

    def fit(self, corpus: list[str]) -> None:
        self.embedder.fit(corpus)

    def use_embedder(self, embedder: Embedder) -> None:
        """Switch searches to `embedder`, once records of its version are stored."""

        self.embedder = embedder
        logger.info("Search now uses embedding version %s", embedder.version)

    def add_documents(self, records: list[VectorRecord], embedder: Embedder | None = None) -> int:
        """Embed and upsert `records`; returns the number stored.

        `embedder` defaults to the store's own; ingestion passes a freshly
        fitted one while the current model keeps serving searches.
        """

        if not records:
            return 0

        embedder = embedder or self.embedder
        embeddings = embedder.embed_documents([record.content for record in records])
        version = embedder.version

        ids: list[str] = []
        vectors: list[list[float]] = []
        documents: list[str] = []
        metadatas: list[dict[str, Any]] = []
        for record, vector in zip(records, embeddings, strict=True):
            if not any(vector):
                logger.debug("Skipping record %s with an empty embedding", record.id)
                continue
            ids.append(record.id)
            vectors.append(vector)
            documents.append(record.content)
            metadatas.append(
                {
                    **{key: value for key, value in record.metadata.items() if value is not None},
                    EMBEDDING_VERSION_KEY: version,
                }
            )

        if ids:
            self.collection.upsert(ids, vectors, documents, metadatas)
        logger.info("Indexed %d/%d records into %s", len(ids), len(records), self.collection.name)
        return len(ids)

    def snapshot(self) -> list[VectorRecord]:
        """Stored records as re-indexable `VectorRecord`s, version tag removed."""

        return [
            VectorRecord(
                id=record.id,
                content=record.document,
                metadata={key: value for key, value in record.metadata.items() if key != EMBEDDING_VERSION_KEY},
            )
            for record in self.collection.records()
        ]

    def delete(self, ids: list[str]) -> None:
        if ids:
            self.collection.delete(ids)
            logger.info("Deleted %d records from %s", len(ids), self.collection.name)

    def search(
        self,
        query: str,
        *,
        limit: int | None = None,
        source_type: str | None = None,
        min_relevance: float | None = None,
    ) -> list[SearchResult]:
        """Return up to `limit` hits with `relevance_score >= min_relevance`.

        Results are ordered by ascending distance. A query that shares no
        vocabulary with the index returns nothing.

        Raises:
            EmbeddingVocabularyStaleError: the embedder is untrained, or the
                collection only holds records of another embedding version.
        """

        if limit is None:
            limit = self.config.top_k
        floor = self.config.min_relevance if min_relevance is None else min_relevance
        if limit <= 0 or not query.strip():
            return []

        self.embedder.refresh()
        vector = self.embedder.embed_query(query)
        if not any(vector):
            logger.debug("Query %r has no indexed terms", query)
            return []

        version = self.embedder.version
        if not self.collection.exists({EMBEDDING_VERSION_KEY: version}):
            if self.collection.count():
                raise EmbeddingVocabularyStaleError(
                    f"Collection {self.collection.name!r} holds no records of embedding version "
                    f"{version}; re-index or reload the vocabulary"
                )
            return []

        hits = self.collection.query(vector, limit, _where(version, source_type))

        results: list[SearchResult] = []
        for hit in hits:
            relevance = 1.0 - hit.distance
            if relevance < floor:
                continue
            results.append(
                SearchResult(
                    id=hit.id,
                    content=hit.document,
                    metadata=hit.metadata,
                    distance=hit.distance,
                    relevance_score=relevance,
                )
            )

        results.sort(key=lambda result: result.distance)
        logger.info("Search %r returned %d/%d hits above %.2f", query, len(results), len(hits), floor)
        return results

    def clear(self) -> None:
        """Drop and recreate the collection empty."""

        self.collection.drop()
        self.collection.open()
        logger.info("Collection %s cleared", self.collection.name)

    def count(self) -> int:
        return self.collection.count()

    def get_stats(self) -> dict[str, Any]:
        return {
            "collection_name": self.collection.name,
            "total_documents": self.count(),
            "location": self.collection.location,
            "embedding_version": self.embedder.version if self.embedder.is_fitted else None,
        }


def create_collection(config: VectorStoreConfig) -> VectorCollection:
    if config.url == "memory":
        return InMemoryCollection(config.collection_name)
    return ChromaCollection(config.url, config.collection_name)


def create_vector_store(settings: Settings) -> VectorStore:
    """Wire the configured collection and embedder into a store (not yet opened)."""

    return VectorStore(
        create_collection(settings.vector_store),
        create_embedder(settings.embedding),
        settings.retrieval,
    )


def _create_http_client(url: str) -> Any:
    import chromadb

    parsed = urlparse(url)
    return chromadb.HttpClient(
        host=parsed.hostname or "localhost",
        port=parsed.port or (443 if parsed.scheme == "https" else 8000),
        ssl=parsed.scheme == "https",
    )


def _where(version: str, source_type: str | None) -> dict[str, Any]:
    # Chroma accepts a single field per filter; several fields need "$and".
    conditions: list[dict[str, Any]] = [{EMBEDDING_VERSION_KEY: version}]
    if source_type:
        conditions.append({"sourceType": source_type})
    return conditions[0] if len(conditions) == 1 else {"$and": conditions}


def _metadata_match(metadata: dict[str, Any], where: dict[str, Any] | None) -> bool:
    if not where:
        return True
    for key, value in where.items():
        if key == "$and":
            if not all(_metadata_match(metadata, condition) for condition in value):
                return False
        elif metadata.get(key) != value:
            return False
    return True
