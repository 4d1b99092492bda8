"""
Book import: reads source files, normalizes text and derives reading metadata.
"""
from __future__ import annotations

import math
import shutil
from contextlib import closing
from pathlib import Path
from typing import Protocol

from .config import LIBRARY_DIR, PDF_SUPPORT, console
from .errors import BookNotFound, UnsupportedFormat
from .observability import get_logger
from .records import Book, BookMetadata, new_id
from .storage import LibraryStore
from .tokenization import extract_key_terms, normalize_whitespace

logger = get_logger(__name__)

WORDS_PER_PAGE = 250
TEXT_SUFFIXES = {".txt", ".md"}


class SourceFileStore(Protocol):
    @property
    def root(self) -> Path:
        ...

    def save_file(self, source_path: Path, destination_name: str) -> Path:
        ...

    def delete_file(self, stored_path: Path):
        ...


class LocalSourceFileStore:
    """Keeps a copy of each imported book file under the library directory."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def save_file(self, source_path: Path, destination_name: str) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        destination = self._root / str(destination_name)
        shutil.copy2(source_path, destination)
        return destination

    def delete_file(self, stored_path: Path):
        path = Path(stored_path)
        if path.parent.resolve() == self._root.resolve():
            path.unlink(missing_ok=True)


def _read_pdf(path: Path) -> tuple[str, int]:
    import fitz

    with closing(fitz.open(str(path))) as pdf_doc:
        pages = [page.get_text("text") for page in pdf_doc]
    return "\n".join(pages), len(pages)


def estimate_page_count(word_count: int) -> int:
    return max(1, math.ceil(word_count / WORDS_PER_PAGE)) if word_count else 0


class BookLibrary:
    """Creates, lists and deletes books in the store."""

    def __init__(
        self,
        store: LibraryStore,
        storage_dir: str | Path = LIBRARY_DIR,
        file_store: SourceFileStore | None = None,
    ):
        self.store = store
        self.files: SourceFileStore = file_store or LocalSourceFileStore(Path(storage_dir))

    def import_text(
        self,
        text: str,
        title: str,
        author: str = "Unknown",
        language: str = "en",
        *,
        page_count: int | None = None,
        source_path: str | None = None,
        book_id: str | None = None,
    ) -> Book:
        normalized = normalize_whitespace(text)
        word_count = len(normalized.split())
        metadata = BookMetadata(
            word_count=word_count,
            page_count=page_count if page_count is not None else estimate_page_count(word_count),
            language=language,
            key_terms=extract_key_terms(normalized),
            source_path=source_path,
        )
        book = Book(
            id=book_id or new_id("book"),
            title=title.strip() or "Untitled",
            author=author.strip() or "Unknown",
            text=normalized,
            metadata=metadata,
        )
        self.store.save_book(book)
        logger.info("book_imported", book_id=book.id, words=word_count, pages=metadata.page_count)
        return book

    def import_file(self, path: str | Path, title: str | None = None, author: str = "Unknown") -> Book:
        source = Path(path)
        if not source.is_file():
            raise FileNotFoundError(f"no book file at {source}")

        suffix = source.suffix.lower()
        page_count = None
        if suffix == ".pdf":
            if not PDF_SUPPORT:
                logger.error("import_blocked_missing_dependency", file_path=str(source), dependency="PyMuPDF")
                raise UnsupportedFormat("PDF import needs PyMuPDF ('fitz'); install the pdf extra")
            text, page_count = _read_pdf(source)
        elif suffix in TEXT_SUFFIXES:
            text = source.read_text(encoding="utf-8", errors="replace")
        else:
            raise UnsupportedFormat(f"cannot import '{suffix or source.name}' files")

        book_id = new_id("book")
        stored = self.files.save_file(source, f"{book_id}{suffix}")
        book = self.import_text(
            text,
            title or source.stem,
            author,
            page_count=page_count,
            source_path=str(stored),
            book_id=book_id,
        )
        console.print(f"[green]OK Imported [bold]{book.title}[/bold] ({book.metadata.word_count} words)[/green]")
        return book

    def get(self, book_id: str) -> Book:
        book = self.store.get_book(book_id)
        if book is None:
            raise BookNotFound(f"no book with id '{book_id}'")
        return book

    def list_books(self) -> list[Book]:
        return self.store.list_books()

    def delete(self, book_id: str) -> list[str]:
        """Deletes the book row tree and its stored source file; returns index paths to remove."""
        book = self.get(book_id)
        index_paths = self.store.delete_book(book_id)
        if book.metadata.source_path:
            self.files.delete_file(Path(book.metadata.source_path))
        return index_paths
