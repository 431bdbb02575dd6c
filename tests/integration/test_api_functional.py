import httpx
from fastapi.testclient import TestClient

from elab_rag.api.main import create_app
from elab_rag.config import CrawlerConfig, Settings, VectorStoreConfig
from elab_rag.ingest.embedder import TfidfEmbedder
from elab_rag.ingest.jobs import CrawlJobManager
from elab_rag.ingest.pipeline import IngestPipeline
from elab_rag.llm.client import OllamaClient
from elab_rag.retrieval.vector_store import ChromaCollection, InMemoryCollection, VectorStore


def _offline_llm() -> OllamaClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return OllamaClient(
        http_client=httpx.AsyncClient(base_url="http://ollama.test", transport=httpx.MockTransport(_handler))
    )


def _app(crawler_factory, store: VectorStore | None = None):
    settings = Settings(vector_store=VectorStoreConfig(url="memory"))
    store = store or VectorStore(InMemoryCollection("elab_documents"), TfidfEmbedder(), settings.retrieval)
    pipeline = IngestPipeline(
        vector_store=store,
        crawler_config=CrawlerConfig(max_depth=2, max_pages=10),
        crawler_factory=crawler_factory,
    )
    jobs = CrawlJobManager(pipeline)
    app = create_app(settings, vector_store=store, llm_client=_offline_llm(), job_manager=jobs)
    return app, jobs, store


def test_api_crawl_search_chat_and_clear(crawler_factory) -> None:
    app, jobs, store = _app(crawler_factory)

    with TestClient(app) as client:
        crawl_resp = client.post("/crawl", json={"sources": ["https://elab.fon.bg.ac.rs"], "max_depth": 1})
        assert crawl_resp.status_code == 202
        job_id = crawl_resp.json()["job_id"]
        jobs.wait(job_id, timeout=10)

        job_resp = client.get(f"/crawl/{job_id}")
        assert job_resp.status_code == 200
        assert job_resp.json()["status"] == "completed"
        assert job_resp.json()["stats"]["total_documents"] == 3

        list_resp = client.get("/crawl")
        assert [item["job_id"] for item in list_resp.json()["items"]] == [job_id]

        search_resp = client.get("/search", params={"q": "Kada su ispitni rokovi?", "limit": 3})
        assert search_resp.status_code == 200
        payload = search_resp.json()
        assert payload["total"] >= 1
        assert payload["results"][0]["title"] == "Ispiti"
        assert payload["results"][0]["relevance_score"] > 0.3

        chat_resp = client.post(
            "/chat",
            json={
                "conversation_id": "c-1",
                "question": "Kada su ispitni rokovi?",
                "history": [{"role": "user", "content": "Zdravo"}, {"role": "assistant", "content": "Zdravo!"}],
            },
        )
        assert chat_resp.status_code == 200
        chat = chat_resp.json()
        assert chat["conversation_id"] == "c-1"
        assert chat["degraded"] is True
        assert "Ispiti" in chat["answer"]
        assert chat["sources"][0]["url"] == "https://elab.fon.bg.ac.rs/ispiti"
        assert chat["processing_time_ms"] >= 0

        indexed = store.count()
        clear_resp = client.delete("/index")
        assert clear_resp.json() == {"deleted": indexed}
        assert store.count() == 0


def test_api_health_and_llm_status_report_offline_model(crawler_factory) -> None:
    app, _, _ = _app(crawler_factory)

    with TestClient(app) as client:
        health = client.get("/health").json()
        llm = client.get("/llm").json()

    assert health["status"] == "degraded"
    assert health["llm_online"] is False
    assert health["vector_store"]["total_documents"] == 0
    assert llm == {
        "status": "offline",
        "base_url": "http://localhost:11434",
        "model": "llama3.2",
        "available_models": [],
    }


def test_api_error_mapping(crawler_factory) -> None:
    app, _, _ = _app(crawler_factory)

    with TestClient(app) as client:
        assert client.get("/search", params={"q": "ispitni rokovi"}).status_code == 409
        assert client.get("/search", params={"q": ""}).status_code == 422
        assert client.get("/crawl/missing").status_code == 404
        assert client.post("/chat", json={"question": ""}).status_code == 422


class _RefusingChromaClient:
    def get_or_create_collection(self, **kwargs):
        raise ConnectionError("connection refused")


def test_api_reports_unavailable_vector_store(crawler_factory) -> None:
    store = VectorStore(
        ChromaCollection("http://chroma.test:8000", "elab_documents", client=_RefusingChromaClient()),
        TfidfEmbedder(),
    )
    app, _, _ = _app(crawler_factory, store)

    with TestClient(app) as client:
        search_resp = client.get("/search", params={"q": "ispitni rokovi"})
        chat_resp = client.post("/chat", json={"question": "Kada su ispitni rokovi?"})
        health = client.get("/health").json()

    assert search_resp.status_code == 503
    assert chat_resp.status_code == 200
    assert chat_resp.json()["degraded"] is True
    assert chat_resp.json()["sources"] == []
    assert health["vector_store"] is None


def test_api_llm_status_survives_non_json_model_list() -> None:
    llm = OllamaClient(
        http_client=httpx.AsyncClient(
            base_url="http://ollama.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="not json")),
        )
    )
    app = create_app(Settings(vector_store=VectorStoreConfig(url="memory")), llm_client=llm)

    with TestClient(app) as client:
        response = client.get("/llm")

    assert response.status_code == 200
    assert response.json()["status"] == "online"
    assert response.json()["available_models"] == []
