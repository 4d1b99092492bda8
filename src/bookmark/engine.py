"""
Retrieval-augmented conversation engine.

Ingest turns a book into chunks, embeds them in order and appends them to the
book's vector index. Answering embeds the question, retrieves the nearest
passages, fits history and passages into the context budget and asks the
generation model for a reply.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from langchain_core.prompts import PromptTemplate

from .chunker import TextChunker
from .config import (
    CONTEXT_WINDOW,
    EMBEDDING_MODEL_NAME,
    GENERATION_MAX_TOKENS,
    GENERATION_MODEL_NAME,
    GENERATION_TEMPERATURE,
    GENERATION_TOP_P,
    HISTORY_TURNS,
    INDEX_DIR,
    RETRIEVAL_TOP_K,
)
from .conversation import ConversationState, format_turns
from .errors import IndexCorrupt
from .library import BookLibrary
from .metrics import TurnMetrics
from .model_lifecycle import ModelLifecycleManager
from .observability import get_logger, log_context
from .records import Book, Chunk, ConversationSession, Message, chunk_id_for
from .storage import LibraryStore
from .tokenization import count_tokens
from .vector_index import VectorIndex

logger = get_logger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant that answers questions based on the given context."
ANSWER_PROMPT = PromptTemplate.from_template(
    "{history}Context:\n{context}\n\nQuestion: {question}\n\nAnswer:"
)
NO_CONTEXT = "(no passages retrieved)"

IngestProgress = Callable[[int, int], None]


@dataclass(frozen=True)
class IngestReport:
    book_id: str
    total_chunks: int
    added: int
    skipped: int
    index_version: int | None


@dataclass(frozen=True)
class PromptPlan:
    prompt: str
    history: list[Message]
    passages: list[Chunk]
    tokens: int

    @property
    def chunk_ids(self) -> list[str]:
        return [chunk.id for chunk in self.passages]


def render_prompt(question: str, history: list[Message], passages: list[Chunk]) -> str:
    history_block = f"Conversation so far:\n{format_turns(history)}\n\n" if history else ""
    context = "\n\n".join(chunk.text for chunk in passages) if passages else NO_CONTEXT
    return ANSWER_PROMPT.format(history=history_block, context=context, question=question)


def plan_prompt(
    question: str,
    history: list[Message],
    passages: list[Chunk],
    token_budget: int,
    system_prompt: str = SYSTEM_PROMPT,
    counter: Callable[[str], int] = count_tokens,
) -> PromptPlan:
    """
    Fits the prompt into ``token_budget``: oldest history turns go first, then the
    lowest-ranked passages. The question itself is never shortened.
    """
    history = list(history)
    passages = list(passages)
    fixed = counter(system_prompt)

    def _measure() -> tuple[str, int]:
        text = render_prompt(question, history, passages)
        return text, fixed + counter(text)

    prompt, tokens = _measure()
    while tokens > token_budget and history:
        history.pop(0)
        prompt, tokens = _measure()
    while tokens > token_budget and passages:
        passages.pop()
        prompt, tokens = _measure()
    return PromptPlan(prompt=prompt, history=history, passages=passages, tokens=tokens)


class RetrievalAugmentedEngine:
    def __init__(
        self,
        store: LibraryStore,
        models: ModelLifecycleManager,
        conversation: ConversationState,
        *,
        library: BookLibrary | None = None,
        chunker: TextChunker | None = None,
        metrics: TurnMetrics | None = None,
        index_dir: str | Path = INDEX_DIR,
        embedding_model: str = EMBEDDING_MODEL_NAME,
        generation_model: str = GENERATION_MODEL_NAME,
        top_k: int = RETRIEVAL_TOP_K,
        history_turns: int = HISTORY_TURNS,
        context_window: int = CONTEXT_WINDOW,
        max_tokens: int = GENERATION_MAX_TOKENS,
        temperature: float = GENERATION_TEMPERATURE,
        top_p: float = GENERATION_TOP_P,
    ):
        self.store = store
        self.models = models
        self.conversation = conversation
        self.library = library
        self.chunker = chunker or TextChunker()
        self.metrics = metrics
        self.index_dir = Path(index_dir)
        self.embedding_model = embedding_model
        self.generation_model = generation_model
        self.top_k = int(top_k)
        self.history_turns = int(history_turns)
        self.context_window = int(context_window)
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        self.top_p = float(top_p)
        self._indices: dict[str, VectorIndex] = {}
        self._ingest_locks: dict[str, asyncio.Lock] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}

    @property
    def token_budget(self) -> int:
        return max(1, self.context_window - self.max_tokens)

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------
    def open_index(self, book_id: str) -> VectorIndex | None:
        """The book's in-memory index, restored from its newest persisted version on first use."""
        index = self._indices.get(book_id)
        if index is not None:
            return index
        latest = self.store.latest_index(book_id)
        if latest is None:
            return None
        index = VectorIndex.restore(latest.index_path)
        self._indices[book_id] = index
        return index

    def _index_path(self, book_id: str, version: int) -> Path:
        return self.index_dir / book_id / f"v{version:04d}.index"

    def _persist_index(self, book_id: str, index: VectorIndex) -> int:
        path = self._index_path(book_id, self.store.next_index_version(book_id))
        index.persist(path)
        version, pruned = self.store.record_index_version(
            book_id,
            path,
            dimension=index.dimension,
            entry_count=index.size(),
        )
        for stale in pruned:
            _remove_index_files(stale)
        return version

    def delete_book(self, book_id: str):
        """Deletes a book with its chunks, sessions, notes and index files."""
        self._indices.pop(book_id, None)
        self._ingest_locks.pop(book_id, None)
        for session in self.conversation.history(book_id):
            self._session_locks.pop(session.id, None)
        if self.library is not None:
            index_paths = self.library.delete(book_id)
        else:
            index_paths = self.store.delete_book(book_id)
        for path in index_paths:
            _remove_index_files(path)
        book_dir = self.index_dir / book_id
        if book_dir.is_dir() and not any(book_dir.iterdir()):
            book_dir.rmdir()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------
    async def ingest(self, book: Book, on_progress: IngestProgress | None = None) -> IngestReport:
        lock = self._ingest_locks.setdefault(book.id, asyncio.Lock())
        async with lock:
            with log_context(book_id=book.id):
                return await self._ingest_locked(book, on_progress)

    async def _ingest_locked(self, book: Book, on_progress: IngestProgress | None) -> IngestReport:
        embedder = self.models.get(self.embedding_model)
        started = time.perf_counter()

        spans = self.chunker.chunk(book.text)
        chunks = [
            Chunk(
                id=chunk_id_for(book.id, span.index - 1),
                book_id=book.id,
                index=span.index - 1,
                start=span.start,
                end=span.end,
                text=span.text,
            )
            for span in spans
        ]
        self.store.save_book(book)
        self.store.save_chunks(chunks)
        book.chunk_ids = [chunk.id for chunk in chunks]

        try:
            index = self.open_index(book.id)
        except IndexCorrupt as exc:
            logger.warning("index_rebuilding", error=str(exc))
            self._indices.pop(book.id, None)
            index = None
        total = len(chunks)
        added = skipped = 0
        for position, chunk in enumerate(chunks, start=1):
            if index is not None and index.contains(chunk.id):
                skipped += 1
            else:
                try:
                    vector = await asyncio.to_thread(embedder.embed, chunk.text)
                    if index is None:
                        index = VectorIndex(len(vector))
                        self._indices[book.id] = index
                    index.add(chunk.id, vector)
                    self.store.set_chunk_embedding(chunk.id, vector)
                except Exception as exc:
                    logger.error(
                        "ingest_failed",
                        chunk_id=chunk.id,
                        indexed=index.size() if index is not None else 0,
                        error=str(exc),
                    )
                    if added and index is not None and not isinstance(exc, IndexCorrupt):
                        self._persist_index(book.id, index)
                    if self.metrics is not None:
                        self.metrics.record_ingest(book.id, added, success=False)
                    raise
                added += 1
            if on_progress:
                on_progress(position, total)

        version = self._persist_index(book.id, index) if added and index is not None else None
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "book_ingested",
            chunks=total,
            added=added,
            skipped=skipped,
            index_version=version,
            elapsed_ms=round(elapsed_ms, 1),
        )
        if self.metrics is not None:
            self.metrics.record_ingest(book.id, added, success=True)
        return IngestReport(book.id, total, added, skipped, version)

    # ------------------------------------------------------------------
    # Answering
    # ------------------------------------------------------------------
    def retrieve(self, book_id: str, vector, k: int | None = None) -> list[tuple[Chunk, float]]:
        index = self.open_index(book_id)
        if index is None:
            return []
        hits = index.query(vector, self.top_k if k is None else int(k))
        rows = self.store.get_chunks_batch([chunk_id for chunk_id, _ in hits])
        return [(rows[chunk_id], distance) for chunk_id, distance in hits if chunk_id in rows]

    async def answer(self, query: str, session: ConversationSession) -> Message:
        question = str(query or "").strip()
        if not question:
            raise ValueError("query must not be empty")
        embedder = self.models.get(self.embedding_model)
        generator = self.models.get(self.generation_model)

        lock = self._session_locks.setdefault(session.id, asyncio.Lock())
        async with lock:
            with log_context(book_id=session.book_id, session_id=session.id):
                return await self._answer_locked(question, session, embedder, generator)

    async def _answer_locked(self, question: str, session: ConversationSession, embedder, generator) -> Message:
        started = time.perf_counter()
        try:
            vector = await asyncio.to_thread(embedder.embed, question)
            hits = self.retrieve(session.book_id, vector)
            history = self.conversation.recent_turns(session, self.history_turns)
            plan = plan_prompt(question, history, [chunk for chunk, _ in hits], self.token_budget)
            reply = await asyncio.to_thread(
                generator.generate,
                plan.prompt,
                SYSTEM_PROMPT,
                self.max_tokens,
                self.temperature,
                self.top_p,
            )
        except Exception as exc:
            latency_ms = (time.perf_counter() - started) * 1000.0
            logger.error("answer_failed", error=str(exc))
            if self.metrics is not None:
                self.metrics.record_turn(latency_ms, success=False)
            raise

        content = str(reply or "").strip()
        user_message = Message(session_id=session.id, role="user", content=question)
        assistant_message = Message(
            session_id=session.id,
            role="assistant",
            content=content,
            chunk_ids=plan.chunk_ids,
        )
        self.conversation.append(session, user_message, assistant_message)

        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "answer_generated",
            retrieved=len(hits),
            used_chunks=len(plan.passages),
            history_turns=len(plan.history),
            prompt_tokens=plan.tokens,
            latency_ms=round(latency_ms, 1),
        )
        if self.metrics is not None:
            self.metrics.record_turn(
                latency_ms,
                success=True,
                prompt_tokens=plan.tokens,
                completion_tokens=count_tokens(content),
            )
        return assistant_message

    async def end_session(self) -> ConversationSession:
        """Ends the current conversation and forgets its turn lock."""
        session = await self.conversation.end_session()
        self._session_locks.pop(session.id, None)
        return session


def _remove_index_files(path: str | Path):
    target = Path(path)
    for candidate in (target, target.with_name(target.name + ".json")):
        candidate.unlink(missing_ok=True)
