import logging

import pytest

from elab_rag.config import ChunkingConfig, CrawlerConfig, Settings
from elab_rag.obs.logs import configure_logging


def test_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("CHROMA_URL", "http://chroma.internal:9000")
    monkeypatch.setenv("CHROMA_COLLECTION", "elab_test")
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434")
    monkeypatch.setenv("OLLAMA_MODEL", "llama3.1")
    monkeypatch.setenv("EMBEDDING_BACKEND", "ollama")
    monkeypatch.setenv("VOCABULARY_PATH", "/var/lib/elab/tfidf.json")
    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    settings = Settings.from_env()

    assert settings.vector_store.url == "http://chroma.internal:9000"
    assert settings.vector_store.collection_name == "elab_test"
    assert settings.llm.base_url == "http://gpu-box:11434"
    assert settings.llm.model == "llama3.1"
    assert settings.llm.timeout_seconds == 30.0
    assert settings.embedding.backend == "ollama"
    assert settings.embedding.ollama_base_url == "http://gpu-box:11434"
    assert settings.embedding.vocabulary_path == "/var/lib/elab/tfidf.json"
    assert settings.log_level == "DEBUG"


def test_defaults_match_institutional_crawl_limits() -> None:
    config = CrawlerConfig()

    assert (config.max_depth, config.max_pages, config.max_links_per_page) == (2, 50, 10)
    assert config.user_agent == "ELAB-AI-Crawler/1.0"
    assert config.source_types["bc.elab.fon.bg.ac.rs"] == "ELAB_BC"


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        CrawlerConfig(max_pages=0)
    with pytest.raises(ValueError):
        ChunkingConfig(chunk_size=200, min_chunk_size=300)
    with pytest.raises(ValueError):
        Settings.model_validate({"embedding": {"backend": "word2vec"}})


def test_configure_logging_installs_one_handler() -> None:
    root = logging.getLogger()
    before = len(root.handlers)

    configure_logging("debug")
    configure_logging("WARNING")

    assert len(root.handlers) <= before + 1
    assert root.level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
