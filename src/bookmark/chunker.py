"""
Sentence-greedy chunking with word-aligned trailing overlap.

Chunks are contiguous spans of the book text, so ``text[chunk.start:chunk.end]``
always reproduces the chunk and the size bound is measured on that span.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from langchain_text_splitters import TextSplitter

from .config import CHUNK_OVERLAP, CHUNK_SIZE

_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")
_WORD_RE = re.compile(r"\S+")


@dataclass(frozen=True)
class ChunkSpan:
    index: int  # 1-based
    total: int
    start: int
    end: int
    text: str

    @property
    def label(self) -> str:
        return f"[CHUNK {self.index}/{self.total}]"


def split_sentences(text: str) -> list[tuple[int, int]]:
    """Returns (start, end) offsets of sentence-like units, whitespace trimmed."""
    spans: list[tuple[int, int]] = []
    for match in _SENTENCE_RE.finditer(text):
        raw = match.group(0)
        stripped = raw.strip()
        if not stripped:
            continue
        start = match.start() + (len(raw) - len(raw.lstrip()))
        spans.append((start, start + len(stripped)))
    return spans


def trailing_overlap_start(text: str, start: int, end: int, overlap_size: int, floor: int = 0) -> int:
    """
    Offset where the word-aligned overlap of ``text[start:end]`` begins.
    Whole words are taken from the end while the carried span stays within
    ``overlap_size`` characters and does not start before ``floor``; returns
    ``end`` when no word fits.
    """
    if overlap_size <= 0:
        return end
    seed = end
    for match in reversed(list(_WORD_RE.finditer(text, start, end))):
        word_start = match.start()
        if end - word_start > overlap_size or word_start < floor:
            break
        seed = word_start
    return seed


class TextChunker(TextSplitter):
    """Greedy sentence accumulator usable directly or as a LangChain splitter."""

    def __init__(self, chunk_size: int = CHUNK_SIZE, chunk_overlap: int = CHUNK_OVERLAP, **kwargs):
        super().__init__(chunk_size=chunk_size, chunk_overlap=chunk_overlap, **kwargs)

    @property
    def max_chunk_size(self) -> int:
        return int(self._chunk_size)

    @property
    def overlap_size(self) -> int:
        return int(self._chunk_overlap)

    def chunk(
        self,
        text: str,
        max_chunk_size: int | None = None,
        overlap_size: int | None = None,
    ) -> list[ChunkSpan]:
        max_size = self.max_chunk_size if max_chunk_size is None else int(max_chunk_size)
        overlap = self.overlap_size if overlap_size is None else int(overlap_size)
        if max_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        if overlap < 0:
            raise ValueError("overlap_size must not be negative")

        bounds: list[tuple[int, int]] = []
        current: tuple[int, int] | None = None
        for sent_start, sent_end in split_sentences(text):
            if current is None:
                current = (sent_start, sent_end)
            elif sent_end - current[0] <= max_size:
                current = (current[0], sent_end)
            else:
                bounds.append(current)
                if sent_end - sent_start > max_size:
                    # Oversized sentence stands alone.
                    current = (sent_start, sent_end)
                    continue
                seed = trailing_overlap_start(
                    text,
                    current[0],
                    current[1],
                    overlap,
                    floor=sent_end - max_size,
                )
                current = (seed if seed < current[1] else sent_start, sent_end)
        if current is not None:
            bounds.append(current)

        total = len(bounds)
        return [
            ChunkSpan(index=i + 1, total=total, start=start, end=end, text=text[start:end])
            for i, (start, end) in enumerate(bounds)
        ]

    def split_text(self, text: str) -> list[str]:
        return [span.text for span in self.chunk(text)]
