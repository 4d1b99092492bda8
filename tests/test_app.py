import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import numpy as np
import requests

from bookmark import app
from bookmark.capabilities import ModelSpec
from bookmark.chunker import TextChunker
from bookmark.records import ModelState


SEA = " ".join(f"Sentence number {i} is about the open sea." for i in range(12))


class _ConstantEmbedder:
    def __init__(self):
        self.calls = 0
        self.fail_on = None

    def embed(self, text):
        self.calls += 1
        if self.fail_on is not None and self.calls == self.fail_on:
            raise RuntimeError("embedding backend crashed")
        return np.array([float(len(text)), 1.0], dtype=np.float32)


class _FlakyGenerator:
    """Raises a connection error on the listed call numbers."""

    def __init__(self, fail_calls=()):
        self.calls = 0
        self.fail_calls = set(fail_calls)

    def generate(self, prompt, system_prompt="", max_tokens=512, temperature=0.7, top_p=0.95):
        self.calls += 1
        if self.calls in self.fail_calls:
            raise requests.ConnectionError("llama-server went away")
        return "- The sea is open."


class TestAppWiring(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.embedder = _ConstantEmbedder()
        self.generator = _FlakyGenerator()
        catalogue = [
            ModelSpec(name=app.EMBEDDING_MODEL_NAME, kind="embedding", loader=lambda _p: self.embedder),
            ModelSpec(name=app.GENERATION_MODEL_NAME, kind="generation", loader=lambda _p: self.generator),
        ]
        self.app = app.build_app(
            root / "library.sqlite",
            catalogue=catalogue,
            models_dir=root / "models",
            index_dir=root / "indices",
            library_dir=root / "books",
            metrics_dir=root / "metrics",
        )

    async def asyncTearDown(self):
        await self.app.close()
        self.tmp.cleanup()

    async def test_build_app_shares_one_store(self):
        self.assertIs(self.app.engine.store, self.app.store)
        self.assertIs(self.app.library.store, self.app.store)
        self.assertIs(self.app.engine.conversation, self.app.conversation)
        self.assertEqual(self.app.models.names(), [app.EMBEDDING_MODEL_NAME, app.GENERATION_MODEL_NAME])

    async def test_ensure_ingested_builds_index_once(self):
        await self.app.models.ensure_ready(app.EMBEDDING_MODEL_NAME)
        book = self.app.library.import_text("One line. Another line. A third line.", "Lines")
        with patch.object(app.console, "print"):
            self.assertTrue(await app.ensure_ingested(self.app, book))
            book = self.app.library.get(book.id)
            self.assertTrue(await app.ensure_ingested(self.app, book))
        self.assertEqual(self.app.store.index_versions(book.id), [1])

    async def test_render_books_lists_titles(self):
        self.app.library.import_text("Some text.", "A Title", "An Author")
        with patch.object(app.console, "print") as printed:
            app.render_books(self.app.library.list_books())
        table = printed.call_args[0][0]
        self.assertEqual(table.row_count, 1)

    async def test_ensure_ingested_finishes_partial_index(self):
        self.app.engine.chunker = TextChunker(60, 10)
        await self.app.models.ensure_ready(app.EMBEDDING_MODEL_NAME)
        book = self.app.library.import_text(SEA, "Sea")
        self.embedder.fail_on = 3
        with patch.object(app.console, "print"):
            self.assertFalse(await app.ensure_ingested(self.app, book))
            book = self.app.library.get(book.id)
            self.assertEqual(self.app.engine.open_index(book.id).size(), 2)

            self.embedder.fail_on = None
            self.assertTrue(await app.ensure_ingested(self.app, book))

        total = len(self.app.store.get_chunks(book.id))
        self.assertGreater(total, 2)
        self.assertEqual(self.app.engine.open_index(book.id).size(), total)
        self.assertEqual(self.app.store.index_versions(book.id), [1, 2])

    async def test_conversation_survives_backend_errors(self):
        book = self.app.library.import_text(SEA, "Sea")
        self.generator.fail_calls = {1, 3}
        replies = iter([book.id, "Is the sea open?", "Is the sea open?", "extract", "back"])

        async def fake_ask(prompt, **kwargs):
            return next(replies)

        with patch.object(app, "ask", fake_ask), \
                patch.object(app.console, "status"), \
                patch.object(app.console, "print") as printed:
            await app.handle_conversation(self.app)

        shown = " ".join(str(call.args[0]) for call in printed.call_args_list if call.args)
        self.assertIn("Could not answer: llama-server went away", shown)
        self.assertIn("Could not extract notes: llama-server went away", shown)
        [session] = self.app.conversation.history(book.id)
        self.assertIsNotNone(session.ended_at)
        self.assertEqual([m.role for m in session.messages], ["user", "assistant"])
        self.assertEqual(session.summary, "- The sea is open.")
        self.assertEqual(self.app.models.resource(app.GENERATION_MODEL_NAME).state, ModelState.DOWNLOADED)


if __name__ == "__main__":
    unittest.main()
