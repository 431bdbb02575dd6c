"""Retrieval-augmented answering with deterministic degradation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from elab_rag.agent.fallback import build_fallback_answer
from elab_rag.config import AssistantConfig, RetrievalConfig
from elab_rag.errors import ElabRagError, ModelError
from elab_rag.llm.client import OllamaClient
from elab_rag.obs.timing import Timer
from elab_rag.retrieval.vector_store import VectorStore
from elab_rag.types import RAGContext, RagAnswer, SourceRef

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """
You are {assistant_name}, an assistant for {institution}.

Your role:
- Answer questions from students about courses, exams, materials and the platform.
- Use only the information in the supplied context.
- Always answer in {language}, clearly, precisely and professionally.

Rules:
1) Rely on the supplied context only. Never invent information.
2) If the context does not contain the answer, say explicitly that the information was not found in the documentation.
3) Mention the source page when it supports the answer.
4) Be concise and avoid long answers.
5) If the question is unclear, ask for clarification.
""".strip()

_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", _SYSTEM_PROMPT),
        MessagesPlaceholder(variable_name="chat_history", optional=True),
        ("human", "{context_prompt}"),
    ]
)


class RagOrchestrator:
    """Answers one question from retrieved passages and the external model.

    A request always produces an answer: retrieval failures count as "no
    context", and an unreachable, failing or slow model switches to the
    deterministic fallback in `elab_rag.agent.fallback`.
    """

    def __init__(
        self,
        *,
        vector_store: VectorStore,
        llm_client: OllamaClient,
        retrieval: RetrievalConfig | None = None,
        assistant: AssistantConfig | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.llm_client = llm_client
        self.retrieval = retrieval or RetrievalConfig()
        self.assistant = assistant or AssistantConfig()

    async def answer(
        self,
        question: str,
        *,
        history: list[Any] | None = None,
        source_type: str | None = None,
    ) -> RagAnswer:
        """Run retrieval, prompting and generation for one question."""

        with Timer() as timer:
            contexts = await self.retrieve(question, source_type=source_type)
            text, degraded = await self._generate(question, contexts, history or [])

        logger.info(
            "Answered in %.0f ms with %d contexts (degraded=%s)",
            timer.elapsed_ms,
            len(contexts),
            degraded,
        )
        return RagAnswer(
            answer=text,
            sources=[
                SourceRef(url=ctx.url, title=ctx.title, relevance_score=ctx.relevance_score)
                for ctx in contexts
            ],
            processing_time_ms=timer.elapsed_ms,
            degraded=degraded,
            model=None if degraded else self.llm_client.model,
        )

    async def retrieve(self, question: str, *, source_type: str | None = None) -> list[RAGContext]:
        try:
            results = await asyncio.to_thread(
                self.vector_store.search,
                question,
                limit=self.retrieval.top_k,
                source_type=source_type,
                min_relevance=self.retrieval.min_relevance,
            )
        except ElabRagError as exc:
            logger.warning("Retrieval failed, continuing without context: %s", exc)
            return []

        return [
            RAGContext(
                content=result.content,
                url=str(result.metadata.get("url", "")),
                title=str(result.metadata.get("title") or "Untitled"),
                relevance_score=result.relevance_score,
            )
            for result in results
        ]

    def build_messages(
        self,
        question: str,
        contexts: list[RAGContext],
        history: list[Any],
    ) -> list[BaseMessage]:
        window = self.assistant.history_exchanges * 2
        recent = history[-window:] if window else []
        return _PROMPT.format_messages(
            assistant_name=self.assistant.name,
            institution=self.assistant.institution,
            language=self.assistant.language,
            chat_history=[_to_message(item) for item in recent],
            context_prompt=build_context_prompt(question, contexts),
        )

    async def _generate(
        self,
        question: str,
        contexts: list[RAGContext],
        history: list[Any],
    ) -> tuple[str, bool]:
        if not await self.llm_client.health_check():
            logger.warning("Language model offline, using fallback answer")
            return self._fallback(contexts), True

        messages = self.build_messages(question, contexts, history)
        try:
            text = await self.llm_client.chat(messages)
        except ModelError as exc:
            logger.warning("Language model failed, using fallback answer: %s", exc)
            return self._fallback(contexts), True

        if not text:
            logger.warning("Language model returned an empty answer, using fallback answer")
            return self._fallback(contexts), True
        return text, False

    def _fallback(self, contexts: list[RAGContext]) -> str:
        return build_fallback_answer(
            contexts,
            max_contexts=self.assistant.fallback_contexts,
            snippet_chars=self.assistant.snippet_chars,
        )


def build_context_prompt(question: str, contexts: list[RAGContext]) -> str:
    """User turn listing every context with title, content, URL and relevance."""

    if not contexts:
        return (
            f"Question: {question}\n\n"
            "Note: no relevant information was found in the documentation for this question."
        )

    blocks = [
        f"[Source {i}: {ctx.title}]\n{ctx.content}\n"
        f"(URL: {ctx.url}, relevance: {round(ctx.relevance_score * 100)}%)"
        for i, ctx in enumerate(contexts, start=1)
    ]
    context_text = "\n\n---\n\n".join(blocks)
    return (
        "Context from the documentation:\n\n"
        f"{context_text}\n\n---\n\n"
        f"Question: {question}\n\n"
        "Answer using the context above. If it does not contain enough information, say so."
    )


def _to_message(item: Any) -> BaseMessage:
    if isinstance(item, BaseMessage):
        return item
    if isinstance(item, Mapping):
        role = str(item.get("role", "user")).lower()
        content = str(item.get("content", ""))
    else:
        role = str(getattr(item, "role", "user")).lower()
        content = str(getattr(item, "content", ""))
    if role in ("assistant", "ai"):
        return AIMessage(content=content)
    return HumanMessage(content=content)
