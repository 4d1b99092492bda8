import unittest

from bookmark.chunker import TextChunker, split_sentences, trailing_overlap_start


SCENARIO = "Alice was here. Bob was there. Carol left early."

LONG_TEXT = (
    "The river ran cold that spring. Mara walked the bank every morning! "
    "Did the heron come back? It did, on the fourth day. "
    "Her brother laughed at the notebook she kept. She kept it anyway. "
    "By June the pages were full of birds and weather and small arguments. "
    "Nobody else read them"
)


class TestTextChunker(unittest.TestCase):
    def setUp(self):
        self.chunker = TextChunker(chunk_size=20, chunk_overlap=5)

    def test_scenario_boundaries(self):
        spans = self.chunker.chunk(SCENARIO, 20, 5)
        self.assertEqual(
            [span.text for span in spans],
            ["Alice was here.", "here. Bob was there.", "Carol left early."],
        )
        self.assertEqual([span.label for span in spans], ["[CHUNK 1/3]", "[CHUNK 2/3]", "[CHUNK 3/3]"])

    def test_chunk_text_matches_offsets(self):
        for span in TextChunker(60, 15).chunk(LONG_TEXT):
            self.assertEqual(LONG_TEXT[span.start:span.end], span.text)

    def test_chunks_respect_size_bound_and_cover_every_sentence(self):
        spans = TextChunker(70, 20).chunk(LONG_TEXT)
        self.assertGreater(len(spans), 2)
        for span in spans:
            self.assertLessEqual(len(span.text), 70)
        for start, end in split_sentences(LONG_TEXT):
            self.assertTrue(
                any(span.start <= start and end <= span.end for span in spans),
                msg=f"sentence at {start}:{end} is not inside any chunk",
            )

    def test_chunking_is_deterministic(self):
        first = TextChunker(50, 12).chunk(LONG_TEXT)
        second = TextChunker(50, 12).chunk(LONG_TEXT)
        self.assertEqual(first, second)

    def test_oversized_sentence_becomes_its_own_chunk(self):
        long_sentence = "x" * 50 + " tail."
        text = f"Short one. {long_sentence} Done."
        spans = self.chunker.chunk(text)
        self.assertEqual(spans[0].text, "Short one.")
        self.assertEqual(spans[1].text, long_sentence)
        self.assertLessEqual(len(spans[2].text), 20)
        self.assertTrue(spans[2].text.endswith("Done."))

    def test_trailing_fragment_without_punctuation_is_kept(self):
        spans = TextChunker(200, 10).chunk("One sentence. And a fragment")
        self.assertEqual(spans[-1].text, "One sentence. And a fragment")

    def test_empty_text_yields_no_chunks(self):
        self.assertEqual(self.chunker.chunk(""), [])
        self.assertEqual(self.chunker.chunk("   \n "), [])

    def test_invalid_sizes_are_rejected(self):
        with self.assertRaises(ValueError):
            self.chunker.chunk(SCENARIO, 0, 0)
        with self.assertRaises(ValueError):
            self.chunker.chunk(SCENARIO, 20, -1)

    def test_overlap_never_splits_words(self):
        seed = trailing_overlap_start(SCENARIO, 0, 15, 7)
        self.assertEqual(SCENARIO[seed:15], "here.")
        self.assertEqual(trailing_overlap_start(SCENARIO, 0, 15, 3), 15)
        self.assertEqual(trailing_overlap_start(SCENARIO, 0, 15, 0), 15)

    def test_split_text_follows_text_splitter_interface(self):
        self.assertEqual(
            self.chunker.split_text(SCENARIO),
            ["Alice was here.", "here. Bob was there.", "Carol left early."],
        )
        documents = self.chunker.create_documents([SCENARIO])
        self.assertEqual(len(documents), 3)
        self.assertEqual(documents[0].page_content, "Alice was here.")


if __name__ == "__main__":
    unittest.main()
