"""
SQLite persistence for books, chunks, sessions, notes and index versions.

Schema changes are applied through ordered, versioned migrations recorded in
``schema_migrations``. Every write is an upsert keyed by record id, so the
last write wins.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import numpy as np

from .config import DB_PATH, INDEX_VERSIONS_KEPT
from .observability import get_logger
from .records import Book, BookMetadata, Chunk, ConversationSession, Message, Note

logger = get_logger(__name__)


MigrationRunner = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


@dataclass(frozen=True)
class IndexVersion:
    book_id: str
    version: int
    index_path: str
    dimension: int
    entry_count: int
    created_at: str


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: Iterable[SqliteMigration],
) -> list[int]:
    """Applies pending migrations for a component in version order; returns the versions applied."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )
    done = {
        int(row[0])
        for row in conn.execute(
            "SELECT version FROM schema_migrations WHERE component = ?",
            (component,),
        )
    }

    applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: int(m.version)):
        if int(migration.version) in done:
            continue
        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if migration.runner is not None:
            migration.runner(conn)
        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, int(migration.version), migration.name, _utcnow_iso()),
        )
        applied.append(int(migration.version))
        logger.info("db_migration_applied", component=component, version=migration.version, name=migration.name)
    return applied


def _add_note_tags(conn: sqlite3.Connection):
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(notes)").fetchall()}
    if "tags_json" not in columns:
        conn.execute("ALTER TABLE notes ADD COLUMN tags_json TEXT NOT NULL DEFAULT '[]'")


LIBRARY_MIGRATIONS = [
    SqliteMigration(
        version=1,
        name="create_library_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL DEFAULT 'Unknown',
                text TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS chunks (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                idx INTEGER NOT NULL,
                start_offset INTEGER NOT NULL,
                end_offset INTEGER NOT NULL,
                text TEXT NOT NULL,
                embedding BLOB,
                FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_chunks_book ON chunks(book_id, idx)",
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                summary TEXT,
                messages_json TEXT NOT NULL DEFAULT '[]',
                FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_sessions_book ON sessions(book_id, started_at)",
            """
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                book_id TEXT NOT NULL,
                content TEXT NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('highlight', 'comment', 'vocabulary', 'summary')),
                context TEXT,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_notes_book ON notes(book_id, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_notes_session ON notes(session_id)",
        ),
    ),
    SqliteMigration(
        version=2,
        name="create_vector_indices",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS vector_indices (
                book_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                index_path TEXT NOT NULL,
                dimension INTEGER NOT NULL,
                entry_count INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY(book_id, version)
            )
            """,
        ),
    ),
    SqliteMigration(
        version=3,
        name="add_note_tags",
        runner=_add_note_tags,
    ),
]


def embedding_to_blob(embedding) -> bytes | None:
    if embedding is None:
        return None
    return np.asarray(embedding, dtype="<f4").reshape(-1).tobytes()


def blob_to_embedding(blob: bytes | None) -> list[float] | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()


def _json_loads_or_default(raw: str | None, default: Any):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class LibraryStore:
    """SQLite-backed store shared by the library, engine, conversation and notes layers."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else Path(DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            pass
        self._conn.execute("PRAGMA foreign_keys=ON")
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="library", migrations=LIBRARY_MIGRATIONS)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("library store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------
    def save_book(self, book: Book):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO books (id, title, author, text, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    author = excluded.author,
                    text = excluded.text,
                    metadata_json = excluded.metadata_json
                """,
                (
                    book.id,
                    book.title,
                    book.author,
                    book.text,
                    book.metadata.model_dump_json(),
                    _iso(book.created_at),
                ),
            )

    def _row_to_book(self, row: sqlite3.Row, chunk_ids: list[str]) -> Book:
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            text=row["text"],
            chunk_ids=chunk_ids,
            metadata=BookMetadata.model_validate(_json_loads_or_default(row["metadata_json"], {})),
            created_at=row["created_at"],
        )

    def get_book(self, book_id: str) -> Book | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                return None
            chunk_ids = [
                r["id"]
                for r in conn.execute("SELECT id FROM chunks WHERE book_id = ? ORDER BY idx ASC", (book_id,))
            ]
        return self._row_to_book(row, chunk_ids)

    def list_books(self) -> list[Book]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY created_at ASC, id ASC").fetchall()
            chunk_map: dict[str, list[str]] = {}
            for r in conn.execute("SELECT id, book_id FROM chunks ORDER BY book_id, idx ASC"):
                chunk_map.setdefault(r["book_id"], []).append(r["id"])
        return [self._row_to_book(row, chunk_map.get(row["id"], [])) for row in rows]

    def delete_book(self, book_id: str) -> list[str]:
        """Removes a book and everything it owns; returns index file paths for the caller to delete."""
        with self._connection() as conn:
            paths = [
                str(row["index_path"])
                for row in conn.execute("SELECT index_path FROM vector_indices WHERE book_id = ?", (book_id,))
            ]
            conn.execute("DELETE FROM notes WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM sessions WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM chunks WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM vector_indices WHERE book_id = ?", (book_id,))
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info("book_deleted", book_id=book_id, removed=cursor.rowcount, index_files=len(paths))
        return paths

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------
    def save_chunks(self, chunks: list[Chunk]):
        if not chunks:
            return
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT INTO chunks (id, book_id, idx, start_offset, end_offset, text, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    idx = excluded.idx,
                    start_offset = excluded.start_offset,
                    end_offset = excluded.end_offset,
                    text = excluded.text,
                    embedding = COALESCE(excluded.embedding, chunks.embedding)
                """,
                [
                    (c.id, c.book_id, c.index, c.start, c.end, c.text, embedding_to_blob(c.embedding))
                    for c in chunks
                ],
            )

    def set_chunk_embedding(self, chunk_id: str, embedding):
        with self._connection() as conn:
            conn.execute(
                "UPDATE chunks SET embedding = ? WHERE id = ?",
                (embedding_to_blob(embedding), chunk_id),
            )

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        return Chunk(
            id=row["id"],
            book_id=row["book_id"],
            index=int(row["idx"]),
            start=int(row["start_offset"]),
            end=int(row["end_offset"]),
            text=row["text"],
            embedding=blob_to_embedding(row["embedding"]),
        )

    def get_chunks(self, book_id: str) -> list[Chunk]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE book_id = ? ORDER BY idx ASC",
                (book_id,),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def get_chunks_batch(self, chunk_ids: list[str]) -> dict[str, Chunk]:
        ids = [str(chunk_id) for chunk_id in chunk_ids if chunk_id]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connection() as conn:
            rows = conn.execute(f"SELECT * FROM chunks WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: self._row_to_chunk(row) for row in rows}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def save_session(self, session: ConversationSession):
        messages_json = json.dumps([m.model_dump(mode="json") for m in session.messages], ensure_ascii=True)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, book_id, started_at, ended_at, summary, messages_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    ended_at = excluded.ended_at,
                    summary = excluded.summary,
                    messages_json = excluded.messages_json
                """,
                (
                    session.id,
                    session.book_id,
                    _iso(session.started_at),
                    _iso(session.ended_at),
                    session.summary,
                    messages_json,
                ),
            )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> ConversationSession:
        messages = [Message.model_validate(item) for item in _json_loads_or_default(row["messages_json"], [])]
        return ConversationSession(
            id=row["id"],
            book_id=row["book_id"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            summary=row["summary"],
            messages=messages,
        )

    def get_session(self, session_id: str) -> ConversationSession | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self, book_id: str) -> list[ConversationSession]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE book_id = ? ORDER BY started_at DESC, id DESC",
                (book_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------
    def save_note(self, note: Note):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO notes (id, session_id, book_id, content, type, context, tags_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    type = excluded.type,
                    context = excluded.context,
                    tags_json = excluded.tags_json
                """,
                (
                    note.id,
                    note.session_id,
                    note.book_id,
                    note.content,
                    note.type,
                    note.context,
                    json.dumps(list(note.tags), ensure_ascii=True),
                    _iso(note.timestamp),
                ),
            )

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> Note:
        return Note(
            id=row["id"],
            session_id=row["session_id"],
            book_id=row["book_id"],
            content=row["content"],
            type=row["type"],
            context=row["context"],
            tags=_json_loads_or_default(row["tags_json"], []),
            timestamp=row["created_at"],
        )

    def get_note(self, note_id: str) -> Note | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        return self._row_to_note(row) if row else None

    def query_notes(
        self,
        *,
        book_id: str | None = None,
        session_id: str | None = None,
        note_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Note]:
        """Notes matching every given filter, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("book_id", book_id), ("session_id", session_id), ("type", note_type)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM notes {where} ORDER BY created_at DESC, id DESC",
                params,
            ).fetchall()
        notes = [self._row_to_note(row) for row in rows]
        if start is not None:
            notes = [note for note in notes if note.timestamp >= start]
        if end is not None:
            notes = [note for note in notes if note.timestamp <= end]
        return notes

    def delete_note(self, note_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Vector index versions
    # ------------------------------------------------------------------
    def next_index_version(self, book_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) AS v FROM vector_indices WHERE book_id = ?",
                (book_id,),
            ).fetchone()
        return int(row["v"]) + 1

    def record_index_version(
        self,
        book_id: str,
        index_path: str | Path,
        *,
        dimension: int,
        entry_count: int,
        keep: int = INDEX_VERSIONS_KEPT,
    ) -> tuple[int, list[str]]:
        """
        Records a persisted index as the newest version and prunes older ones.
        Returns the new version and the file paths of pruned versions.
        """
        keep = max(1, int(keep))
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) AS v FROM vector_indices WHERE book_id = ?",
                (book_id,),
            ).fetchone()
            version = int(row["v"]) + 1
            conn.execute(
                """
                INSERT INTO vector_indices (book_id, version, index_path, dimension, entry_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (book_id, version, str(index_path), int(dimension), int(entry_count), _utcnow_iso()),
            )
            stale = conn.execute(
                """
                SELECT version, index_path FROM vector_indices
                WHERE book_id = ?
                ORDER BY version DESC
                LIMIT -1 OFFSET ?
                """,
                (book_id, keep),
            ).fetchall()
            for stale_row in stale:
                conn.execute(
                    "DELETE FROM vector_indices WHERE book_id = ? AND version = ?",
                    (book_id, int(stale_row["version"])),
                )
        pruned = [str(r["index_path"]) for r in stale if str(r["index_path"]) != str(index_path)]
        logger.info("vector_index_version_recorded", book_id=book_id, version=version, pruned=len(pruned))
        return version, pruned

    def latest_index(self, book_id: str) -> IndexVersion | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM vector_indices WHERE book_id = ? ORDER BY version DESC LIMIT 1",
                (book_id,),
            ).fetchone()
        if row is None:
            return None
        return IndexVersion(
            book_id=row["book_id"],
            version=int(row["version"]),
            index_path=str(row["index_path"]),
            dimension=int(row["dimension"]),
            entry_count=int(row["entry_count"]),
            created_at=str(row["created_at"]),
        )

    def index_versions(self, book_id: str) -> list[int]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT version FROM vector_indices WHERE book_id = ? ORDER BY version ASC",
                (book_id,),
            ).fetchall()
        return [int(row["version"]) for row in rows]
