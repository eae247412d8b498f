import pytest

from chunker import Chunk, assemble_chunks, chunk_text, split_at_words
from segmenter import Sentence


def _sentences(*texts):
    return [Sentence(index=i, text=t) for i, t in enumerate(texts)]


def test_short_text_is_one_chunk_equal_to_normalized_input(segmenter):
    chunks = chunk_text("  Hello world.\r\n", segmenter=segmenter)
    assert chunks == [Chunk(index=0, text="Hello world.")]


def test_short_multiline_text_keeps_its_layout(segmenter):
    text = "Line one.\n\nLine two."
    assert chunk_text(text, max_length=100, segmenter=segmenter) == [Chunk(index=0, text=text)]


def test_empty_text_has_no_chunks(segmenter):
    assert chunk_text("   ", segmenter=segmenter) == []


def test_sentences_split_across_chunks_in_order(segmenter):
    text = (
        "The quick brown fox jumps over the lazy dog. "
        "Pack my box with five dozen liquor jugs. "
        "How vexingly quick daft zebras jump."
    )
    chunks = chunk_text(text, max_length=50, segmenter=segmenter)

    assert [c.text for c in chunks] == [
        "The quick brown fox jumps over the lazy dog.",
        "Pack my box with five dozen liquor jugs.",
        "How vexingly quick daft zebras jump.",
    ]
    assert all(len(c.text) <= 50 for c in chunks)
    assert [c.index for c in chunks] == [0, 1, 2]


def test_greedy_packing_joins_with_single_space():
    chunks = assemble_chunks(_sentences("One.", "Two.", "Three.", "Four."), max_length=10)
    assert [c.text for c in chunks] == ["One. Two.", "Three.", "Four."]


def test_oversized_sentence_splits_at_word_boundaries(segmenter):
    words = [f"w{i:08d}" for i in range(1000)]
    text = " ".join(words)
    assert len(text) == 9999

    chunks = chunk_text(text, max_length=4900, segmenter=segmenter)

    assert len(chunks) == 3
    assert all(len(c.text) <= 4900 for c in chunks)
    assert " ".join(c.text for c in chunks).split() == words


def test_oversized_fragments_are_not_merged_with_neighbours():
    long_sentence = " ".join(["word"] * 30)  # 149 chars
    chunks = assemble_chunks(_sentences("Short one.", long_sentence, "Tail."), max_length=60)

    texts = [c.text for c in chunks]
    assert texts[0] == "Short one."
    assert texts[-1] == "Tail."
    assert " ".join(texts[1:-1]) == long_sentence
    assert all(len(t) <= 60 for t in texts)


def test_hard_cut_when_no_word_boundary():
    assert split_at_words("x" * 12, 5) == ["xxxxx", "xxxxx", "xx"]


def test_split_prefers_last_boundary_within_limit():
    assert split_at_words("aaa bbb ccc", 7) == ["aaa bbb", "ccc"]


def test_text_without_sentences_becomes_a_single_chunk():
    class NoSentences:
        def segment(self, text):
            return []

    chunks = chunk_text("alpha beta gamma delta", max_length=11, segmenter=NoSentences())
    assert [c.text for c in chunks] == ["alpha beta", "gamma delta"]


def test_every_chunk_respects_the_limit(segmenter):
    text = " ".join(
        f"Sentence number {i} talks about item {i * 3}.5 and more." for i in range(200)
    )
    chunks = chunk_text(text, max_length=120, segmenter=segmenter)

    assert all(len(c.text) <= 120 for c in chunks)
    assert " ".join(c.text for c in chunks) == text


def test_invalid_max_length():
    with pytest.raises(ValueError):
        assemble_chunks(_sentences("One."), max_length=0)


def test_non_positive_max_length_is_rejected_before_splitting():
    class NoSentences:
        def segment(self, text):
            return []

    with pytest.raises(ValueError, match="max_length"):
        chunk_text("abc", max_length=0, segmenter=NoSentences())
    with pytest.raises(ValueError, match="max_length"):
        split_at_words("abc", 0)
