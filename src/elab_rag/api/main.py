"""FastAPI entrypoint for crawl/index/search/chat endpoints."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from elab_rag.agent.orchestrator import RagOrchestrator
from elab_rag.config import DEFAULT_SEED_URLS, Settings
from elab_rag.errors import (
    EmbeddingServiceError,
    EmbeddingVocabularyStaleError,
    VectorStoreUnavailableError,
)
from elab_rag.ingest.jobs import CrawlJobManager
from elab_rag.ingest.pipeline import IngestPipeline
from elab_rag.llm.client import OllamaClient
from elab_rag.obs.logs import configure_logging
from elab_rag.retrieval.vector_store import VectorStore, create_vector_store

logger = logging.getLogger(__name__)


class CrawlRequest(BaseModel):
    sources: list[str] = Field(default_factory=lambda: list(DEFAULT_SEED_URLS), min_length=1)
    max_depth: int | None = Field(default=None, ge=0, le=5)
    max_pages: int | None = Field(default=None, ge=1, le=500)


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    conversation_id: str | None = None
    question: str = Field(min_length=1)
    history: list[ChatTurn] = Field(default_factory=list)
    source_type: str | None = None


def create_app(
    settings: Settings | None = None,
    *,
    vector_store: VectorStore | None = None,
    llm_client: OllamaClient | None = None,
    job_manager: CrawlJobManager | None = None,
) -> FastAPI:
    """Build the application; collaborators not passed in are created from `settings`."""

    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    store = vector_store or create_vector_store(settings)
    llm = llm_client or OllamaClient(settings.llm)
    jobs = job_manager or CrawlJobManager(IngestPipeline.from_settings(settings, store))
    orchestrator = RagOrchestrator(
        vector_store=store,
        llm_client=llm,
        retrieval=settings.retrieval,
        assistant=settings.assistant,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await asyncio.to_thread(store.initialize)
        except VectorStoreUnavailableError:
            # Endpoints report 503 until the database comes up.
            app.state.store_ready = False
        else:
            app.state.store_ready = True
        yield
        jobs.shutdown(wait=False)
        await llm.aclose()

    app = FastAPI(title="ELAB RAG Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.vector_store = store
    app.state.llm_client = llm
    app.state.job_manager = jobs
    app.state.orchestrator = orchestrator
    app.state.store_ready = False

    @app.get("/health")
    async def health() -> dict[str, Any]:
        try:
            stats = await _store_call(app, store.get_stats)
        except HTTPException:
            stats = None
        llm_online = await llm.health_check()
        return {
            "status": "ok" if stats is not None and llm_online else "degraded",
            "vector_store": stats,
            "llm_online": llm_online,
        }

    @app.get("/llm")
    async def llm_status() -> dict[str, Any]:
        online = await llm.health_check()
        return {
            "status": "online" if online else "offline",
            "base_url": llm.base_url,
            "model": llm.model,
            "available_models": await llm.list_models() if online else [],
        }

    @app.post("/crawl", status_code=202)
    def start_crawl(request: CrawlRequest) -> dict[str, Any]:
        overrides = request.model_dump(include={"max_depth", "max_pages"}, exclude_none=True)
        crawler_config = settings.crawler.model_copy(update=overrides) if overrides else None
        job = jobs.submit(request.sources, crawler_config=crawler_config)
        return job.to_dict()

    @app.get("/crawl")
    def list_crawls(limit: int = Query(default=20, ge=1, le=100)) -> dict[str, Any]:
        return {"items": [job.to_dict() for job in jobs.list_recent(limit=limit)]}

    @app.get("/crawl/{job_id}")
    def crawl_detail(job_id: str) -> dict[str, Any]:
        try:
            job = jobs.get(job_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown crawl job {job_id}") from exc
        return job.to_dict()

    @app.delete("/index")
    async def clear_index() -> dict[str, Any]:
        deleted = await _store_call(app, store.count)
        await _store_call(app, store.clear)
        return {"deleted": deleted}

    @app.get("/search")
    async def search(
        q: str = Query(min_length=1),
        limit: int = Query(default=5, ge=1, le=20),
        source_type: str | None = None,
    ) -> dict[str, Any]:
        if not q.strip():
            raise HTTPException(status_code=400, detail="Query must not be blank")
        results = await _store_call(
            app,
            store.search,
            q,
            limit=limit,
            source_type=source_type,
        )
        return {
            "query": q,
            "total": len(results),
            "results": [
                {
                    "id": result.id,
                    "content": result.content,
                    "url": result.metadata.get("url"),
                    "title": result.metadata.get("title"),
                    "source_type": result.metadata.get("sourceType"),
                    "relevance_score": result.relevance_score,
                }
                for result in results
            ],
        }

    @app.post("/chat")
    async def chat(request: ChatRequest) -> dict[str, Any]:
        if not app.state.store_ready:
            try:
                await _store_call(app, store.count)
            except HTTPException as exc:
                logger.warning("Vector store not ready, answering without context: %s", exc.detail)
        answer = await orchestrator.answer(
            request.question,
            history=[turn.model_dump() for turn in request.history],
            source_type=request.source_type,
        )
        return {
            "conversation_id": request.conversation_id,
            "answer": answer.answer,
            "sources": [
                {"url": ref.url, "title": ref.title, "relevance_score": ref.relevance_score}
                for ref in answer.sources
            ],
            "processing_time_ms": answer.processing_time_ms,
            "degraded": answer.degraded,
            "model": answer.model,
        }

    return app


async def _store_call(app: FastAPI, func: Any, *args: Any, **kwargs: Any) -> Any:
    """Run a blocking vector store call off the event loop, mapping errors to HTTP codes."""

    try:
        if not app.state.store_ready:
            await asyncio.to_thread(app.state.vector_store.initialize)
            app.state.store_ready = True
        return await asyncio.to_thread(func, *args, **kwargs)
    except (VectorStoreUnavailableError, EmbeddingServiceError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except EmbeddingVocabularyStaleError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
