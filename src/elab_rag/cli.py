"""Command line entry point: index, clear, crawl, search, ask, llm-status, serve."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

from elab_rag.agent.orchestrator import RagOrchestrator
from elab_rag.config import DEFAULT_SEED_URLS, Settings
from elab_rag.errors import ElabRagError
from elab_rag.ingest.crawler import WebCrawler
from elab_rag.ingest.pipeline import IngestPipeline
from elab_rag.llm.client import OllamaClient
from elab_rag.obs.logs import configure_logging
from elab_rag.retrieval.vector_store import create_vector_store

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="elab-rag", description="ELAB retrieval-augmented assistant")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    index = commands.add_parser("index", help="Crawl sources and rebuild the vector index")
    _add_crawl_arguments(index)

    crawl = commands.add_parser("crawl", help="Crawl sources and print statistics without indexing")
    _add_crawl_arguments(crawl)

    commands.add_parser("clear", help="Delete every record from the vector index")

    search = commands.add_parser("search", help="Run a similarity search against the index")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=5)
    search.add_argument("--source-type", default=None)

    ask = commands.add_parser("ask", help="Answer a question from the indexed documentation")
    ask.add_argument("question")
    ask.add_argument("--source-type", default=None)

    commands.add_parser("llm-status", help="Show language model availability and installed models")

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    return parser


def _add_crawl_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("sources", nargs="*", help="Seed URLs (defaults to the ELAB sites)")
    parser.add_argument("--max-depth", type=int, default=None)
    parser.add_argument("--max-pages", type=int, default=None)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(args.log_level or settings.log_level)

    handler = _COMMANDS[args.command]
    try:
        return handler(args, settings)
    except ElabRagError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


def _crawler_settings(args: argparse.Namespace, settings: Settings) -> Settings:
    overrides = {
        key: value
        for key, value in (("max_depth", args.max_depth), ("max_pages", args.max_pages))
        if value is not None
    }
    if overrides:
        settings = settings.model_copy(update={"crawler": settings.crawler.model_copy(update=overrides)})
    return settings


def _run_index(args: argparse.Namespace, settings: Settings) -> int:
    settings = _crawler_settings(args, settings)
    store = create_vector_store(settings)
    store.initialize()
    report = IngestPipeline.from_settings(settings, store).run(args.sources or list(DEFAULT_SEED_URLS))
    _print_json(report.to_dict())
    if report.total_documents == 0:
        logger.error("No documents were crawled; check the network and seed URLs")
        return 1
    return 0


def _run_crawl(args: argparse.Namespace, settings: Settings) -> int:
    settings = _crawler_settings(args, settings)
    crawler = WebCrawler(settings.crawler)
    try:
        documents = crawler.crawl_multiple(args.sources or list(DEFAULT_SEED_URLS))
    finally:
        crawler.close()
    _print_json(
        {
            "stats": asdict(crawler.get_stats()),
            "documents": [
                {"url": doc.url, "title": doc.title, "source_type": doc.source_type, "length": doc.content_length}
                for doc in documents
            ],
            "errors": crawler.errors,
        }
    )
    return 0


def _run_clear(args: argparse.Namespace, settings: Settings) -> int:
    store = create_vector_store(settings)
    store.initialize()
    deleted = store.count()
    store.clear()
    _print_json({"deleted": deleted, "collection": store.collection.name})
    return 0


def _run_search(args: argparse.Namespace, settings: Settings) -> int:
    store = create_vector_store(settings)
    store.initialize()
    results = store.search(args.query, limit=args.limit, source_type=args.source_type)
    _print_json(
        [
            {
                "title": result.metadata.get("title"),
                "url": result.metadata.get("url"),
                "relevance_score": round(result.relevance_score, 4),
                "content": result.content,
            }
            for result in results
        ]
    )
    return 0


def _run_ask(args: argparse.Namespace, settings: Settings) -> int:
    store = create_vector_store(settings)
    store.initialize()

    async def _ask() -> Any:
        client = OllamaClient(settings.llm)
        try:
            orchestrator = RagOrchestrator(
                vector_store=store,
                llm_client=client,
                retrieval=settings.retrieval,
                assistant=settings.assistant,
            )
            return await orchestrator.answer(args.question, source_type=args.source_type)
        finally:
            await client.aclose()

    answer = asyncio.run(_ask())
    print(answer.answer)
    print()
    for ref in answer.sources:
        print(f"- {ref.title} ({round(ref.relevance_score * 100)}%): {ref.url}")
    print(f"[{answer.processing_time_ms:.0f} ms, degraded={answer.degraded}]")
    return 0


def _run_llm_status(args: argparse.Namespace, settings: Settings) -> int:
    async def _status() -> dict[str, Any]:
        client = OllamaClient(settings.llm)
        try:
            online = await client.health_check()
            return {
                "status": "online" if online else "offline",
                "base_url": client.base_url,
                "model": client.model,
                "available_models": await client.list_models() if online else [],
                "model_info": await client.get_model_info() if online else None,
            }
        finally:
            await client.aclose()

    status = asyncio.run(_status())
    _print_json(status)
    return 0 if status["status"] == "online" else 1


def _run_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from elab_rag.api.main import create_app

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)
    return 0


def _print_json(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False, default=str)
    sys.stdout.write("\n")


_COMMANDS = {
    "index": _run_index,
    "crawl": _run_crawl,
    "clear": _run_clear,
    "search": _run_search,
    "ask": _run_ask,
    "llm-status": _run_llm_status,
    "serve": _run_serve,
}


if __name__ == "__main__":
    sys.exit(main())
