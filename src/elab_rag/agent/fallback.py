"""Deterministic answers used when the language model is unavailable."""

from __future__ import annotations

from elab_rag.types import RAGContext

DEGRADED_NOTICE = (
    "⚠️ AI model trenutno nije dostupan. "
    "Ovaj odgovor je automatski sastavljen iz pronađenih izvora."
)
NO_INFORMATION = (
    "Nisam pronašao tu informaciju u ELAB dokumentaciji. "
    "Pokušajte da preformulišete pitanje."
)


def build_fallback_answer(
    contexts: list[RAGContext],
    *,
    max_contexts: int = 2,
    snippet_chars: int = 300,
) -> str:
    """Summarize the best contexts without a model.

    The output always starts with `DEGRADED_NOTICE` so clients can tell it
    apart from a model-grounded answer. With no contexts it reports that
    nothing was found.
    """

    if not contexts:
        return f"{DEGRADED_NOTICE}\n\n{NO_INFORMATION}"

    lines = [DEGRADED_NOTICE, "", "Najrelevantnije informacije:"]
    for idx, context in enumerate(contexts[:max_contexts], start=1):
        snippet = _truncate(" ".join(context.content.split()), snippet_chars)
        lines.append(f"{idx}. {context.title}")
        lines.append(f"   {snippet}")
        lines.append(f"   Izvor: {context.url}")
    return "\n".join(lines)


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    cut = text[: max_length - 3]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut + "..."
