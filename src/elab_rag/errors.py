"""Exception hierarchy for the ingestion and retrieval core."""

from __future__ import annotations


class ElabRagError(Exception):
    """Base class for all errors raised by this package."""


class FetchError(ElabRagError):
    """A page could not be fetched (network, timeout, status, non-HTML)."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class ParseError(ElabRagError):
    """HTML could not be reduced to text and links."""


class EmbeddingVocabularyStaleError(ElabRagError):
    """An embedding was requested from a generator that has not been trained."""


class EmbeddingServiceError(ElabRagError):
    """A remote embedding model failed to return a vector."""


class VectorStoreUnavailableError(ElabRagError):
    """The vector database could not serve the request."""


class ModelError(ElabRagError):
    """Base class for language model failures that trigger degraded mode."""


class ModelUnavailableError(ModelError):
    """The language model service is unreachable or returned an error."""


class ModelTimeoutError(ModelError):
    """The language model did not answer within the configured deadline."""
