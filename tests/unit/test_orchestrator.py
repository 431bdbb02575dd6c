import asyncio

import httpx
from langchain_core.language_models import FakeListChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from elab_rag.agent.fallback import DEGRADED_NOTICE, NO_INFORMATION, build_fallback_answer
from elab_rag.agent.orchestrator import RagOrchestrator, build_context_prompt
from elab_rag.config import AssistantConfig, LLMConfig
from elab_rag.errors import VectorStoreUnavailableError
from elab_rag.ingest.embedder import TfidfEmbedder
from elab_rag.llm.client import OllamaClient
from elab_rag.retrieval.vector_store import InMemoryCollection, VectorStore
from elab_rag.types import RAGContext, VectorRecord

_EXAM_TEXT = "Ispitni rokovi za školsku godinu su januarski, junski i septembarski rok."


def _store() -> VectorStore:
    records = [
        VectorRecord(
            id="ispiti-0000",
            content=_EXAM_TEXT,
            metadata={"url": "https://elab.fon.bg.ac.rs/ispiti", "title": "Ispiti", "sourceType": "ELAB_MAIN"},
        ),
        VectorRecord(
            id="kursevi-0000",
            content="Platforma nudi kurseve iz programiranja i baza podataka.",
            metadata={"url": "https://bc.elab.fon.bg.ac.rs/kursevi", "title": "Kursevi", "sourceType": "ELAB_BC"},
        ),
    ]
    store = VectorStore(InMemoryCollection("test"), TfidfEmbedder())
    store.fit([record.content for record in records])
    store.add_documents(records)
    return store


def _ollama(online: bool, chat_model=None, timeout: float = 5.0) -> OllamaClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        if not online:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"models": [{"name": "llama3.2"}]})

    return OllamaClient(
        LLMConfig(timeout_seconds=timeout),
        chat_model=chat_model,
        http_client=httpx.AsyncClient(base_url="http://ollama.test", transport=httpx.MockTransport(_handler)),
    )


class _SlowChatModel:
    async def ainvoke(self, messages, **kwargs):
        await asyncio.sleep(5)
        return AIMessage(content="prekasno")


class _UnavailableStore:
    def search(self, query, **kwargs):
        raise VectorStoreUnavailableError("chroma is down")


def test_offline_model_falls_back_to_top_context() -> None:
    orchestrator = RagOrchestrator(vector_store=_store(), llm_client=_ollama(online=False))

    answer = asyncio.run(orchestrator.answer("Kada su ispitni rokovi?"))

    assert answer.degraded is True
    assert answer.model is None
    assert answer.answer.startswith(DEGRADED_NOTICE)
    assert "1. Ispiti" in answer.answer
    assert "Izvor: https://elab.fon.bg.ac.rs/ispiti" in answer.answer
    assert answer.sources[0].title == "Ispiti"
    assert answer.processing_time_ms >= 0.0


def test_online_model_answers_from_context() -> None:
    chat_model = FakeListChatModel(responses=["Ispitni rokovi su januarski, junski i septembarski."])
    orchestrator = RagOrchestrator(vector_store=_store(), llm_client=_ollama(online=True, chat_model=chat_model))

    answer = asyncio.run(orchestrator.answer("Kada su ispitni rokovi?"))

    assert answer.degraded is False
    assert answer.model == "llama3.2"
    assert answer.answer == "Ispitni rokovi su januarski, junski i septembarski."
    assert [source.url for source in answer.sources] == ["https://elab.fon.bg.ac.rs/ispiti"]


def test_model_timeout_switches_to_fallback() -> None:
    orchestrator = RagOrchestrator(
        vector_store=_store(),
        llm_client=_ollama(online=True, chat_model=_SlowChatModel(), timeout=0.05),
    )

    answer = asyncio.run(orchestrator.answer("Kada su ispitni rokovi?"))

    assert answer.degraded is True
    assert "Ispiti" in answer.answer
    assert answer.processing_time_ms < 5000


def test_empty_model_reply_switches_to_fallback() -> None:
    orchestrator = RagOrchestrator(
        vector_store=_store(),
        llm_client=_ollama(online=True, chat_model=FakeListChatModel(responses=["   "])),
    )

    answer = asyncio.run(orchestrator.answer("Kada su ispitni rokovi?"))

    assert answer.degraded is True
    assert answer.answer.startswith(DEGRADED_NOTICE)


def test_retrieval_failure_is_treated_as_no_context() -> None:
    orchestrator = RagOrchestrator(vector_store=_UnavailableStore(), llm_client=_ollama(online=False))

    answer = asyncio.run(orchestrator.answer("Kada su ispitni rokovi?"))

    assert answer.sources == []
    assert answer.answer == f"{DEGRADED_NOTICE}\n\n{NO_INFORMATION}"


def test_history_is_limited_to_recent_exchanges() -> None:
    orchestrator = RagOrchestrator(
        vector_store=_store(),
        llm_client=_ollama(online=False),
        assistant=AssistantConfig(history_exchanges=2),
    )
    history = []
    for i in range(5):
        history.append({"role": "user", "content": f"pitanje {i}"})
        history.append({"role": "assistant", "content": f"odgovor {i}"})

    messages = orchestrator.build_messages("novo pitanje", [], history)

    assert isinstance(messages[0], SystemMessage)
    assert [message.content for message in messages[1:-1]] == ["pitanje 3", "odgovor 3", "pitanje 4", "odgovor 4"]
    assert isinstance(messages[1], HumanMessage)
    assert isinstance(messages[2], AIMessage)
    assert "novo pitanje" in messages[-1].content


def test_system_prompt_names_assistant_and_language() -> None:
    orchestrator = RagOrchestrator(vector_store=_store(), llm_client=_ollama(online=False))

    system = orchestrator.build_messages("pitanje", [], [])[0].content

    assert "ELAB AI Assistant" in system
    assert "Serbian" in system


def test_context_prompt_lists_sources_with_relevance() -> None:
    contexts = [
        RAGContext(content=_EXAM_TEXT, url="https://elab.fon.bg.ac.rs/ispiti", title="Ispiti", relevance_score=0.5),
        RAGContext(content="Kursevi.", url="https://bc.elab.fon.bg.ac.rs/kursevi", title="Kursevi", relevance_score=0.31),
    ]

    prompt = build_context_prompt("Kada su ispitni rokovi?", contexts)

    assert "[Source 1: Ispiti]" in prompt
    assert "(URL: https://elab.fon.bg.ac.rs/ispiti, relevance: 50%)" in prompt
    assert "[Source 2: Kursevi]" in prompt
    assert prompt.count("---") == 2
    assert "Question: Kada su ispitni rokovi?" in prompt
    assert "no relevant information" in build_context_prompt("Kada?", [])


def test_fallback_uses_two_best_contexts_and_truncates() -> None:
    contexts = [
        RAGContext(content="reč " * 200, url=f"https://elab.fon.bg.ac.rs/{i}", title=f"Strana {i}", relevance_score=0.9 - i / 10)
        for i in range(3)
    ]

    text = build_fallback_answer(contexts, max_contexts=2, snippet_chars=100)

    assert "1. Strana 0" in text
    assert "2. Strana 1" in text
    assert "Strana 2" not in text
    snippet = text.splitlines()[4].strip()
    assert snippet.endswith("...")
    assert len(snippet) <= 100
