"""
Conversation sessions bound to a book: message history, recent-turn projection
and an end-of-session summary.
"""
from __future__ import annotations

import asyncio

from .config import GENERATION_MODEL_NAME, HISTORY_TURNS
from .errors import BookmarkError, NoActiveSession
from .model_lifecycle import ModelLifecycleManager
from .observability import get_logger
from .records import ConversationSession, Message, utcnow
from .storage import LibraryStore

logger = get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = "You summarize reading conversations in a few sentences."
SUMMARY_INSTRUCTION = (
    "Summarize the following conversation about a book. "
    "Capture the questions asked and the main points discussed."
)
SUMMARY_MAX_TOKENS = 300
SUMMARY_TEMPERATURE = 0.4


def format_turns(messages: list[Message]) -> str:
    return "\n".join(f"{message.role}: {message.content}" for message in messages)


class ConversationState:
    """Tracks the current session and persists every history change."""

    def __init__(
        self,
        store: LibraryStore,
        models: ModelLifecycleManager | None = None,
        generation_model: str = GENERATION_MODEL_NAME,
    ):
        self.store = store
        self.models = models
        self.generation_model = generation_model
        self._current: ConversationSession | None = None

    @property
    def current(self) -> ConversationSession | None:
        return self._current

    def require_current(self) -> ConversationSession:
        if self._current is None:
            raise NoActiveSession()
        return self._current

    def start_session(self, book_id: str) -> ConversationSession:
        session = ConversationSession(book_id=book_id)
        self.store.save_session(session)
        self._current = session
        logger.info("session_started", session_id=session.id, book_id=book_id)
        return session

    def load_session(self, session_id: str) -> ConversationSession | None:
        """Makes a persisted session current again; returns None when it does not exist."""
        session = self.store.get_session(session_id)
        if session is not None:
            self._current = session
        return session

    def append(self, session: ConversationSession, *messages: Message):
        for message in messages:
            if message.session_id != session.id:
                raise ValueError(f"message {message.id} belongs to session {message.session_id}")
        session.messages.extend(messages)
        self.store.save_session(session)

    @staticmethod
    def recent_turns(session: ConversationSession, limit: int = HISTORY_TURNS) -> list[Message]:
        """The last ``limit`` messages, oldest first. The session is not modified."""
        if limit <= 0:
            return []
        return list(session.messages[-int(limit):])

    def history(self, book_id: str) -> list[ConversationSession]:
        return self.store.list_sessions(book_id)

    async def end_session(self) -> ConversationSession:
        session = self.require_current()
        session.ended_at = utcnow()
        session.summary = await self._summarize(session)
        self.store.save_session(session)
        self._current = None
        logger.info(
            "session_ended",
            session_id=session.id,
            messages=len(session.messages),
            summarized=bool(session.summary),
        )
        return session

    async def _summarize(self, session: ConversationSession) -> str:
        if not session.messages or self.models is None:
            return ""
        prompt = f"{SUMMARY_INSTRUCTION}\n\n{format_turns(session.messages)}\n\nSummary:"
        try:
            generator = self.models.get(self.generation_model)
            summary = await asyncio.to_thread(
                generator.generate,
                prompt,
                SUMMARY_SYSTEM_PROMPT,
                SUMMARY_MAX_TOKENS,
                SUMMARY_TEMPERATURE,
            )
        except (BookmarkError, RuntimeError, OSError, ValueError) as exc:
            logger.warning("session_summary_unavailable", session_id=session.id, error=str(exc))
            return ""
        return str(summary or "").strip()
