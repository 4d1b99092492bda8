"""
Records shared across the library, conversation and model layers.
Persistent records are pydantic models so they can be stored as JSON.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def chunk_id_for(book_id: str, index: int) -> str:
    """Chunk ids are derived from book and position so re-ingest addresses the same rows."""
    return f"{book_id}:{int(index):05d}"


class BookMetadata(BaseModel):
    word_count: int = 0
    page_count: int = 0
    language: str = "en"
    key_terms: list[str] = Field(default_factory=list)
    source_path: str | None = None


class Book(BaseModel):
    id: str = Field(default_factory=lambda: new_id("book"))
    title: str
    author: str = "Unknown"
    text: str
    chunk_ids: list[str] = Field(default_factory=list)
    metadata: BookMetadata = Field(default_factory=BookMetadata)
    created_at: datetime = Field(default_factory=utcnow)


class Chunk(BaseModel):
    id: str
    book_id: str
    index: int
    start: int
    end: int
    text: str
    embedding: list[float] | None = None


class Message(BaseModel):
    id: str = Field(default_factory=lambda: new_id("msg"))
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    chunk_ids: list[str] = Field(default_factory=list)


class ConversationSession(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sess"))
    book_id: str
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    messages: list[Message] = Field(default_factory=list)
    summary: str | None = None


NoteType = Literal["highlight", "comment", "vocabulary", "summary"]


class Note(BaseModel):
    id: str = Field(default_factory=lambda: new_id("note"))
    session_id: str
    book_id: str
    content: str
    type: NoteType = "comment"
    context: str | None = None
    tags: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class ModelState(str, Enum):
    ABSENT = "absent"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ModelResource:
    """Mutable lifecycle record for one catalogue model."""

    name: str
    path: Path | None
    size_bytes: int = 0
    state: ModelState = ModelState.ABSENT
    progress: float = 0.0
    last_error: str | None = None
    ref_count: int = 0


@dataclass(frozen=True)
class ProgressEvent:
    name: str
    state: ModelState
    fraction: float
    detail: dict = field(default_factory=dict)
