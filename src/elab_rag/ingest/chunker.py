"""Sentence-aware and fixed-window text chunking."""

from __future__ import annotations

import re
from dataclasses import dataclass

from elab_rag.config import ChunkingConfig
from elab_rag.types import ChunkStats, TextChunk

_SENTENCE_PATTERN = re.compile(r"\S.*?(?:[.!?]+(?=\s|$)|$)", flags=re.DOTALL)
_WORD_PATTERN = re.compile(r"\S+")
_CHARS_PER_WORD = 5


@dataclass(slots=True)
class _Span:
    start: int
    end: int


class TextChunker:
    """Splits document text into overlapping chunks sized for embedding.

    Design notes:
    1. Sentences first.
       Text is split into sentences ending in `.`, `!` or `?` followed by
       whitespace. Sentences are appended to a buffer until the next one would
       push it past `chunk_size`.

    2. Overlap by words.
       When a buffer is closed, the next buffer starts at the closed chunk's
       last `chunk_overlap // 5` words (roughly five characters per word), so
       adjacent chunks share context. Words are dropped from the overlap when
       they would push the new chunk past `chunk_size`.

    3. Nothing is cut.
       A buffer smaller than `min_chunk_size` keeps growing instead of being
       dropped, and a sentence longer than `chunk_size` is emitted whole. A
       short tail at the end of the text is merged into the previous chunk.

    Chunks are slices of the input, so their offsets can be used to locate the
    passage in the source document.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def create_chunks(self, text: str) -> list[TextChunk]:
        """Chunk `text` along sentence boundaries.

        Args:
            text: Document body; whitespace is preserved in chunk content.

        Returns:
            Ordered chunks. Empty or too-short input yields an empty list.
        """

        sentences = self._split_sentences(text)
        if not sentences:
            return []

        chunk_size = self.config.chunk_size
        min_size = self.config.min_chunk_size
        overlap_words = self.config.chunk_overlap // _CHARS_PER_WORD

        spans: list[_Span] = []
        buffer: _Span | None = None

        for sentence in sentences:
            if buffer is None:
                buffer = _Span(sentence.start, sentence.end)
                continue

            too_long = sentence.end - buffer.start > chunk_size
            if too_long and buffer.end - buffer.start >= min_size:
                spans.append(buffer)
                overlap_start = self._overlap_start(text, buffer, overlap_words, sentence.end - chunk_size)
                buffer = _Span(overlap_start if overlap_start is not None else sentence.start, sentence.end)
            else:
                buffer.end = sentence.end

        if buffer.end - buffer.start >= min_size:
            spans.append(buffer)
        elif spans and buffer.end > spans[-1].end:
            spans[-1].end = buffer.end

        return [self._make_chunk(text, span, index) for index, span in enumerate(spans)]

    def create_fixed_chunks(self, text: str) -> list[TextChunk]:
        """Slide a `chunk_size` window with stride `chunk_size - chunk_overlap`.

        Sentence boundaries are ignored; windows shorter than `min_chunk_size`
        (the tail of the text) are dropped.
        """

        stride = self.config.chunk_size - self.config.chunk_overlap
        chunks: list[TextChunk] = []
        for start in range(0, len(text), stride):
            end = min(start + self.config.chunk_size, len(text))
            if end - start < self.config.min_chunk_size:
                continue
            chunks.append(self._make_chunk(text, _Span(start, end), len(chunks)))
        return chunks

    @staticmethod
    def get_stats(chunks: list[TextChunk]) -> ChunkStats:
        total = len(chunks)
        total_chars = sum(len(chunk.content) for chunk in chunks)
        if total == 0:
            return ChunkStats(0, 0.0, 0.0, 0)
        return ChunkStats(
            total_chunks=total,
            average_chunk_size=total_chars / total,
            average_word_count=sum(chunk.word_count for chunk in chunks) / total,
            total_characters=total_chars,
        )

    @staticmethod
    def _split_sentences(text: str) -> list[_Span]:
        spans: list[_Span] = []
        for match in _SENTENCE_PATTERN.finditer(text):
            sentence = match.group().rstrip()
            if sentence:
                spans.append(_Span(match.start(), match.start() + len(sentence)))
        return spans

    @staticmethod
    def _overlap_start(text: str, span: _Span, overlap_words: int, earliest: int) -> int | None:
        if overlap_words <= 0:
            return None
        words = list(_WORD_PATTERN.finditer(text, span.start, span.end))
        if len(words) < 2:
            return None
        # Never carry the whole closed chunk forward.
        keep = min(overlap_words, len(words) - 1)
        # Carried words plus the next sentence must still fit in one chunk.
        while keep > 0 and words[-keep].start() < earliest:
            keep -= 1
        return words[-keep].start() if keep else None

    @staticmethod
    def _make_chunk(text: str, span: _Span, index: int) -> TextChunk:
        content = text[span.start : span.end]
        return TextChunk(
            content=content,
            index=index,
            start_char=span.start,
            end_char=span.end,
            word_count=len(content.split()),
        )
