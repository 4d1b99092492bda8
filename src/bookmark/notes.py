"""
Reading notes: manual creation, extraction from conversation messages and
per-session note summaries.
"""
from __future__ import annotations

import asyncio
import re
from datetime import datetime

from .config import GENERATION_MODEL_NAME
from .model_lifecycle import ModelLifecycleManager
from .observability import get_logger
from .records import ConversationSession, Message, Note, NoteType
from .storage import LibraryStore

logger = get_logger(__name__)

EXTRACTION_SYSTEM_PROMPT = (
    "You are an AI assistant that extracts important information from conversations about books.\n"
    "Your task is to identify key points, insights, and noteworthy information from the given text.\n"
    "Format each point as a separate note with a clear, concise description."
)
EXTRACTION_TEMPLATE = """Extract important points from this conversation:
{content}

Focus on:
- Main ideas and themes
- Character insights
- Plot developments
- Literary analysis
- Significant quotes

Format each point as a separate note."""
SUMMARY_TEMPLATE = """Summarize the following notes from a book discussion session:
{notes}

Create a concise summary that captures the main points and insights discussed."""
NO_NOTES_MESSAGE = "No notes found for this session."

_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")


def parse_note_lines(output: str) -> list[str]:
    """One note per non-empty line, leading list numbering or bullets removed."""
    notes = []
    for line in str(output or "").splitlines():
        content = _LIST_MARKER_RE.sub("", line).strip()
        if content:
            notes.append(content)
    return notes


class NoteService:
    def __init__(
        self,
        store: LibraryStore,
        models: ModelLifecycleManager | None = None,
        generation_model: str = GENERATION_MODEL_NAME,
    ):
        self.store = store
        self.models = models
        self.generation_model = generation_model

    def create_note(
        self,
        content: str,
        session_id: str,
        book_id: str,
        type: NoteType = "comment",
        context: str | None = None,
        tags: list[str] | None = None,
    ) -> Note:
        note = Note(
            session_id=session_id,
            book_id=book_id,
            content=content.strip(),
            type=type,
            context=context,
            tags=list(tags or []),
        )
        self.store.save_note(note)
        logger.info("note_created", note_id=note.id, note_type=note.type, book_id=book_id)
        return note

    async def extract_notes(self, message: Message, session: ConversationSession) -> list[Note]:
        """Asks the generation model for key points in a message and stores each as a comment note."""
        generator = self.models.get(self.generation_model) if self.models else None
        if generator is None:
            raise RuntimeError("note extraction needs a model lifecycle manager")
        output = await asyncio.to_thread(
            generator.generate,
            EXTRACTION_TEMPLATE.format(content=message.content),
            EXTRACTION_SYSTEM_PROMPT,
            500,
            0.3,
        )
        notes = [
            self.create_note(
                line,
                session_id=session.id,
                book_id=session.book_id,
                type="comment",
                context=message.content,
            )
            for line in parse_note_lines(output)
        ]
        logger.info("notes_extracted", session_id=session.id, message_id=message.id, count=len(notes))
        return notes

    def get_notes(
        self,
        book_id: str | None = None,
        session_id: str | None = None,
        type: NoteType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Note]:
        return self.store.query_notes(
            book_id=book_id,
            session_id=session_id,
            note_type=type,
            start=start,
            end=end,
        )

    def update_note(self, note_id: str, **changes) -> Note | None:
        note = self.store.get_note(note_id)
        if note is None:
            return None
        changes.pop("id", None)
        updated = note.model_copy(update=changes)
        updated = Note.model_validate(updated.model_dump())
        self.store.save_note(updated)
        return updated

    def delete_note(self, note_id: str) -> bool:
        return self.store.delete_note(note_id)

    async def summarize_session_notes(self, session_id: str) -> str:
        notes = self.get_notes(session_id=session_id)
        if not notes:
            return NO_NOTES_MESSAGE
        generator = self.models.get(self.generation_model) if self.models else None
        if generator is None:
            raise RuntimeError("note summaries need a model lifecycle manager")
        prompt = SUMMARY_TEMPLATE.format(notes="\n".join(note.content for note in notes))
        summary = await asyncio.to_thread(generator.generate, prompt, "", 300, 0.4)
        return str(summary or "").strip()
