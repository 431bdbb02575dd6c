"""Configuration models for the ingestion and retrieval core."""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field, model_validator

DEFAULT_SEED_URLS = [
    "https://elab.fon.bg.ac.rs",
    "https://bc.elab.fon.bg.ac.rs",
    "https://ebt.rs",
]
DEFAULT_ALLOWED_DOMAINS = ["elab.fon.bg.ac.rs", "bc.elab.fon.bg.ac.rs", "ebt.rs"]
DEFAULT_SOURCE_TYPES = {
    "bc.elab.fon.bg.ac.rs": "ELAB_BC",
    "elab.fon.bg.ac.rs": "ELAB_MAIN",
    "ebt.rs": "ELAB_EBT",
}


class CrawlerConfig(BaseModel):
    """Hard limits and politeness settings for one crawl run."""

    max_depth: int = Field(default=2, ge=0)
    max_pages: int = Field(default=50, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0.0)
    user_agent: str = "ELAB-AI-Crawler/1.0"
    allowed_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DOMAINS))
    max_links_per_page: int = Field(default=10, ge=0)
    min_content_length: int = Field(default=100, ge=0)
    max_redirects: int = Field(default=5, ge=0)
    source_types: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_SOURCE_TYPES))


class ChunkingConfig(BaseModel):
    """Character-based chunk sizing with word overlap."""

    chunk_size: int = Field(default=512, ge=1)
    chunk_overlap: int = Field(default=50, ge=0)
    min_chunk_size: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")
        if self.min_chunk_size > self.chunk_size:
            raise ValueError("min_chunk_size must not exceed chunk_size")
        return self


class EmbeddingConfig(BaseModel):
    """Selects the embedding backend and where a trained vocabulary lives."""

    backend: Literal["tfidf", "ollama"] = "tfidf"
    min_token_length: int = Field(default=3, ge=1)
    vocabulary_path: str | None = None
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "nomic-embed-text"
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class VectorStoreConfig(BaseModel):
    """Vector database location and collection identity."""

    url: str = "http://localhost:8000"
    collection_name: str = "elab_documents"
    batch_size: int = Field(default=64, ge=1)


class RetrievalConfig(BaseModel):
    """Query-time retrieval limits."""

    top_k: int = Field(default=5, ge=1)
    min_relevance: float = Field(default=0.3, ge=0.0, le=1.0)


class LLMConfig(BaseModel):
    """External language model service settings."""

    base_url: str = "http://localhost:11434"
    model: str = "llama3.2"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    timeout_seconds: float = Field(default=240.0, gt=0.0)
    health_timeout_seconds: float = Field(default=10.0, gt=0.0)


class AssistantConfig(BaseModel):
    """Persona and answer-shaping settings for the orchestrator."""

    name: str = "ELAB AI Assistant"
    institution: str = "ELAB platforma Fakulteta organizacionih nauka"
    language: str = "Serbian"
    history_exchanges: int = Field(default=3, ge=0)
    fallback_contexts: int = Field(default=2, ge=1, le=2)
    snippet_chars: int = Field(default=300, ge=40)


class Settings(BaseModel):
    """Aggregate settings used to wire the application."""

    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, keeping defaults for unset ones."""

        ollama_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
        embedding = EmbeddingConfig(
            backend=os.getenv("EMBEDDING_BACKEND", "tfidf"),
            vocabulary_path=os.getenv("VOCABULARY_PATH") or None,
            ollama_base_url=ollama_url,
            ollama_model=os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        )
        vector_store = VectorStoreConfig(
            url=os.getenv("CHROMA_URL", "http://localhost:8000"),
            collection_name=os.getenv("CHROMA_COLLECTION", "elab_documents"),
        )
        llm = LLMConfig(
            base_url=ollama_url,
            model=os.getenv("OLLAMA_MODEL", "llama3.2"),
            timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "240")),
        )
        return cls(
            embedding=embedding,
            vector_store=vector_store,
            llm=llm,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
