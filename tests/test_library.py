import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from bookmark import library as library_module
from bookmark.errors import BookNotFound, UnsupportedFormat
from bookmark.library import BookLibrary, estimate_page_count
from bookmark.storage import LibraryStore
from bookmark.tokenization import extract_key_terms


class TestBookLibrary(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.store = LibraryStore(root / "library.sqlite")
        self.books_dir = root / "books"
        self.library = BookLibrary(self.store, self.books_dir)

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_import_text_normalizes_and_derives_metadata(self):
        book = self.library.import_text("The whale.\n\n  The   whale again!\tThe sea.", "Moby Dick", "Melville")
        self.assertEqual(book.text, "The whale. The whale again! The sea.")
        self.assertEqual(book.metadata.word_count, 7)
        self.assertEqual(book.metadata.page_count, 1)
        self.assertEqual(book.metadata.key_terms[0], "whale")
        self.assertEqual(self.library.get(book.id).title, "Moby Dick")

    def test_import_file_copies_source_into_library(self):
        source = Path(self.tmp.name) / "dune.txt"
        source.write_text("Fear is the mind-killer.", encoding="utf-8")

        with patch.object(library_module.console, "print"):
            book = self.library.import_file(source, author="Herbert")

        self.assertEqual(book.title, "dune")
        stored = Path(book.metadata.source_path)
        self.assertEqual(stored.parent, self.books_dir)
        self.assertEqual(stored.read_text(encoding="utf-8"), "Fear is the mind-killer.")

        self.library.delete(book.id)
        self.assertFalse(stored.exists())
        with self.assertRaises(BookNotFound):
            self.library.get(book.id)

    def test_unsupported_and_missing_files(self):
        doc = Path(self.tmp.name) / "notes.docx"
        doc.write_bytes(b"PK")
        with self.assertRaises(UnsupportedFormat):
            self.library.import_file(doc)
        with self.assertRaises(FileNotFoundError):
            self.library.import_file(Path(self.tmp.name) / "missing.txt")

    def test_pdf_without_pymupdf_is_unsupported(self):
        pdf = Path(self.tmp.name) / "book.pdf"
        pdf.write_bytes(b"%PDF-1.4")
        with patch.object(library_module, "PDF_SUPPORT", False):
            with self.assertRaises(UnsupportedFormat):
                self.library.import_file(pdf)

    def test_page_estimate(self):
        self.assertEqual(estimate_page_count(0), 0)
        self.assertEqual(estimate_page_count(250), 1)
        self.assertEqual(estimate_page_count(251), 2)

    def test_key_terms_skip_stopwords_and_short_words(self):
        terms = extract_key_terms("The cat and the hat. The cat sat on a mat with the cat.", limit=2)
        self.assertEqual(terms[0], "cat")
        self.assertNotIn("the", terms)
        self.assertEqual(len(terms), 2)


if __name__ == "__main__":
    unittest.main()
