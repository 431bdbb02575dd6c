"""Embedding abstractions: a trainable TF-IDF baseline and an Ollama adapter."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from hashlib import sha1
from math import log, sqrt
from pathlib import Path

import httpx

from elab_rag.config import EmbeddingConfig
from elab_rag.errors import EmbeddingServiceError, EmbeddingVocabularyStaleError

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]", flags=re.UNICODE)


class Embedder(ABC):
    """Embedder interface used by the vector store.

    The store only relies on vectors of one embedder being comparable with
    each other; `version` identifies which vocabulary or model produced them.
    """

    @property
    @abstractmethod
    def version(self) -> str:
        """Identifier of the model/vocabulary currently used to embed."""

    @property
    def is_fitted(self) -> bool:
        return True

    def fit(self, corpus: list[str]) -> None:
        """Prepare the embedder for a corpus. Pretrained models ignore this."""

    def retrained(self, corpus: list[str]) -> Embedder:
        """Embedder fitted on `corpus`, leaving this one untouched.

        Pretrained models return themselves.
        """

        return self

    def refresh(self) -> bool:
        """Pick up a model updated by another process. Returns True on change."""

        return False

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


@dataclass(frozen=True, slots=True)
class _Vocabulary:
    index: dict[str, int]
    idf: dict[str, float]
    documents: int
    version: str


class TfidfEmbedder(Embedder):
    """Bag-of-words TF-IDF embedding over a corpus-trained vocabulary.

    This is a placeholder for a neural embedding model. Vectors have one
    dimension per vocabulary term, so vectors from two different `train`
    calls are not comparable; train once on the full corpus and re-index
    everything afterwards.

    IDF is smoothed (`ln((1 + N) / (1 + df)) + 1`) so that terms shared by
    every document, including a single-document corpus, keep a non-zero
    weight.

    When a vocabulary file is configured, `refresh()` reloads it after another
    process (for example `elab-rag index`) rewrites it, so a long-running
    server keeps embedding queries in the space of the current index.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._vocabulary: _Vocabulary | None = None
        self._lock = threading.Lock()
        self._vocabulary_file = Path(self.config.vocabulary_path) if self.config.vocabulary_path else None
        self._file_signature: tuple[int, int] | None = None

    @property
    def version(self) -> str:
        return self._require_vocabulary().version

    @property
    def is_fitted(self) -> bool:
        return self._vocabulary is not None

    @property
    def dimension(self) -> int:
        return len(self._require_vocabulary().index)

    def tokenize(self, text: str) -> list[str]:
        cleaned = _PUNCTUATION.sub(" ", text.lower())
        return [token for token in cleaned.split() if len(token) >= self.config.min_token_length]

    def train(self, corpus: list[str]) -> None:
        """Build vocabulary and IDF weights from `corpus`.

        The new vocabulary replaces the old one in a single assignment, so a
        concurrent `embed` uses one model or the other, never a mix.
        """

        document_frequency: Counter[str] = Counter()
        for text in corpus:
            document_frequency.update(set(self.tokenize(text)))

        total = len(corpus)
        terms = sorted(document_frequency)
        idf = {
            term: log((1 + total) / (1 + document_frequency[term])) + 1.0 for term in terms
        }
        vocabulary = _Vocabulary(
            index={term: i for i, term in enumerate(terms)},
            idf=idf,
            documents=total,
            version=_vocabulary_digest(terms, idf),
        )
        signature = self._current_signature()
        with self._lock:
            self._vocabulary = vocabulary
            # Only rewrites of the file after this point trigger a reload.
            self._file_signature = signature
        logger.info("TF-IDF model trained on %d documents, vocabulary size %d", total, len(terms))

    def fit(self, corpus: list[str]) -> None:
        self.train(corpus)

    def retrained(self, corpus: list[str]) -> TfidfEmbedder:
        embedder = TfidfEmbedder(self.config)
        embedder.train(corpus)
        return embedder

    def refresh(self) -> bool:
        signature = self._current_signature()
        if signature is None or signature == self._file_signature:
            return False

        vocabulary = _read_vocabulary(self._vocabulary_file)
        with self._lock:
            previous = self._vocabulary
            self._vocabulary = vocabulary
            self._file_signature = signature
        changed = previous is None or previous.version != vocabulary.version
        if changed:
            logger.info("Reloaded vocabulary %s from %s", vocabulary.version, self._vocabulary_file)
        return changed

    def embed(self, text: str) -> list[float]:
        vocabulary = self._require_vocabulary()
        vector = [0.0] * len(vocabulary.index)
        tokens = self.tokenize(text)
        if not tokens:
            return vector

        for token, count in Counter(tokens).items():
            position = vocabulary.index.get(token)
            if position is not None:
                vector[position] = (count / len(tokens)) * vocabulary.idf[token]

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self.embed(text)

    def save(self, path: str | Path) -> None:
        vocabulary = self._require_vocabulary()
        terms = sorted(vocabulary.index, key=vocabulary.index.__getitem__)
        payload = {
            "version": vocabulary.version,
            "documents": vocabulary.documents,
            "terms": terms,
            "idf": [vocabulary.idf[term] for term in terms],
        }
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Readers in other processes must never see a half-written file.
        staging = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        staging.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        os.replace(staging, target)
        if self._vocabulary_file is not None and self._vocabulary_file.resolve() == target.resolve():
            self._file_signature = self._current_signature()
        logger.info("Saved vocabulary %s to %s", vocabulary.version, target)

    @classmethod
    def load(cls, path: str | Path, config: EmbeddingConfig | None = None) -> "TfidfEmbedder":
        embedder = cls(config)
        embedder._vocabulary_file = Path(path)
        embedder._file_signature = embedder._current_signature()
        embedder._vocabulary = _read_vocabulary(embedder._vocabulary_file)
        logger.info(
            "Loaded vocabulary %s (%d terms) from %s",
            embedder._vocabulary.version,
            len(embedder._vocabulary.index),
            path,
        )
        return embedder

    def _current_signature(self) -> tuple[int, int] | None:
        if self._vocabulary_file is None:
            return None
        try:
            stat = self._vocabulary_file.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _require_vocabulary(self) -> _Vocabulary:
        with self._lock:
            vocabulary = self._vocabulary
        if vocabulary is None:
            raise EmbeddingVocabularyStaleError(
                "TF-IDF embedder has no vocabulary; call train() on the corpus first"
            )
        return vocabulary


class OllamaEmbedder(Embedder):
    """Pretrained embeddings served by Ollama's `/api/embeddings` endpoint.

    Vectors have a fixed dimensionality determined by the model, so no
    corpus training is needed and `fit` is a no-op.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self._client = client or httpx.Client(
            base_url=self.config.ollama_base_url,
            timeout=self.config.timeout_seconds,
        )

    @property
    def version(self) -> str:
        return f"ollama:{self.config.ollama_model}"

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_query(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        try:
            response = self._client.post(
                "/api/embeddings",
                json={"model": self.config.ollama_model, "prompt": text},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingServiceError(f"Ollama embedding request failed: {exc}") from exc
        return [float(value) for value in response.json()["embedding"]]

    def close(self) -> None:
        self._client.close()


def create_embedder(config: EmbeddingConfig) -> Embedder:
    """Build the configured embedder, restoring a saved vocabulary if present."""

    if config.backend == "ollama":
        return OllamaEmbedder(config)
    if config.vocabulary_path and Path(config.vocabulary_path).exists():
        return TfidfEmbedder.load(config.vocabulary_path, config)
    return TfidfEmbedder(config)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)


def _vocabulary_digest(terms: list[str], idf: dict[str, float]) -> str:
    digest = sha1()
    for term in terms:
        digest.update(f"{term}\t{idf[term]:.12g}\n".encode("utf-8"))
    return "tfidf:" + digest.hexdigest()[:16]


def _read_vocabulary(path: Path) -> _Vocabulary:
    payload = json.loads(path.read_text(encoding="utf-8"))
    terms: list[str] = payload["terms"]
    return _Vocabulary(
        index={term: i for i, term in enumerate(terms)},
        idf=dict(zip(terms, payload["idf"], strict=True)),
        documents=int(payload["documents"]),
        version=str(payload["version"]),
    )
