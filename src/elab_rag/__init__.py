"""ELAB RAG package."""

from .config import (
    ChunkingConfig,
    CrawlerConfig,
    EmbeddingConfig,
    LLMConfig,
    RetrievalConfig,
    Settings,
    VectorStoreConfig,
)

__all__ = [
    "ChunkingConfig",
    "CrawlerConfig",
    "EmbeddingConfig",
    "LLMConfig",
    "RetrievalConfig",
    "Settings",
    "VectorStoreConfig",
]
