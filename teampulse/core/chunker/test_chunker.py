import pytest

from teampulse.core.chunker.chunker import split


def transcript(paragraphs: int = 12) -> str:
    lines = []
    for i in range(paragraphs):
        lines.append(
            f"Speaker {i % 3}: We reviewed item {i} of the proposal. The price is firm, "
            f"but we can discuss the delivery terms! Is that acceptable for round {i}?"
        )
    return "\n\n".join(lines)


def test_short_text_is_a_single_chunk():
    text = "Anna: this offer is only valid today, sign now."
    assert len(text) <= 50

    chunks = split(text, max_chunk_chars=6000, overlap_chars=400)

    assert len(chunks) == 1
    assert chunks[0].start == 0
    assert chunks[0].end == len(text)
    assert chunks[0].overlap == 0
    assert chunks[0].text == text


@pytest.mark.parametrize("text", ["", "   \n\n\t  "])
def test_empty_text_gives_no_chunks(text):
    assert split(text, max_chunk_chars=100, overlap_chars=10) == []


@pytest.mark.parametrize(
    "max_chars, overlap",
    [(0, 0), (-5, 0), (100, -1), (100, 100), (100, 150)],
)
def test_invalid_sizes_raise(max_chars, overlap):
    with pytest.raises(ValueError):
        split("some text", max_chunk_chars=max_chars, overlap_chars=overlap)


def test_chunks_cover_text_exactly_once():
    text = transcript()
    chunks = split(text, max_chunk_chars=300, overlap_chars=40)

    assert len(chunks) > 1
    assert [c.index for c in chunks] == list(range(len(chunks)))
    assert chunks[0].overlap == 0
    for chunk in chunks:
        assert chunk.text == text[chunk.start:chunk.end]
        assert len(chunk.text) <= 300

    rebuilt = "".join(text[c.start + c.overlap:c.end] for c in chunks)
    assert rebuilt == text


def test_consecutive_chunks_overlap():
    text = transcript()
    chunks = split(text, max_chunk_chars=300, overlap_chars=40)

    for previous, current in zip(chunks, chunks[1:]):
        assert current.overlap == previous.end - current.start
        assert current.overlap >= 40
        assert current.start < previous.end


def test_split_is_deterministic():
    text = transcript()
    assert split(text, 250, 30) == split(text, 250, 30)


def test_prefers_paragraph_break():
    first = "word " * 17
    text = first + "\n\n" + "more " * 30

    chunks = split(text, max_chunk_chars=100, overlap_chars=10)

    assert chunks[0].end == len(first) + 2
    assert chunks[0].text.endswith("\n\n")


def test_falls_back_to_sentence_end():
    first = "We cannot go lower than this price for the full package. "
    text = first + "Take it or leave it " * 10

    chunks = split(text, max_chunk_chars=66, overlap_chars=10)

    assert chunks[0].end == len(first)
    assert chunks[0].text.endswith("package. ")


def test_hard_cut_without_whitespace():
    text = "x" * 250

    chunks = split(text, max_chunk_chars=100, overlap_chars=10)

    assert chunks[0].end == 100
    assert "".join(text[c.start + c.overlap:c.end] for c in chunks) == text


def test_next_chunk_starts_at_word_boundary():
    text = " ".join(["deal"] * 200)

    chunks = split(text, max_chunk_chars=120, overlap_chars=15)

    for chunk in chunks[1:]:
        assert text[chunk.start - 1].isspace()
        assert not text[chunk.start].isspace()
