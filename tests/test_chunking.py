from context_allocator.chunking import ELISION_MARKER, assemble_chunks, split_text, truncate_chunks
from context_allocator.models import Chunk

from conftest import words


TEXT = "alpha beta gamma.\n\ndelta epsilon.\n\nzeta eta theta iota."


def test_split_text_merges_paragraphs_up_to_budget(tokenizer):
    chunks = split_text(TEXT, max_tokens=5, tokenizer=tokenizer)

    assert [c.text for c in chunks] == [
        "alpha beta gamma.\n\ndelta epsilon.",
        "zeta eta theta iota.",
    ]
    assert [c.index for c in chunks] == [0, 1]


def test_split_text_chunks_are_exact_slices(tokenizer):
    text = words(47) + ".\n\n" + words(13, prefix="p") + ". " + words(9, prefix="q")
    chunks = split_text(text, max_tokens=10, tokenizer=tokenizer)

    assert chunks
    for chunk in chunks:
        assert text[chunk.start:chunk.end] == chunk.text
        assert tokenizer.count(chunk.text) <= 10

    starts = [c.start for c in chunks]
    assert starts == sorted(starts)


def test_split_text_empty(tokenizer):
    assert split_text("", tokenizer=tokenizer) == []
    assert split_text("   \n\n ", tokenizer=tokenizer) == []


def test_adjacent_chunks_reassemble_to_original(tokenizer):
    chunks = split_text(TEXT, max_tokens=5, tokenizer=tokenizer)

    assert assemble_chunks(list(reversed(chunks))) == TEXT


def test_assemble_sorts_by_start_and_marks_gaps():
    chunks = [
        Chunk(text="third", start=40, end=45),
        Chunk(text="first", start=0, end=5),
        Chunk(text="second", start=7, end=13),
    ]

    assert assemble_chunks(chunks) == "first\n\nsecond" + ELISION_MARKER + "third"


def test_assemble_keeps_relevance_order_without_offsets():
    chunks = [Chunk(text="b", start=10, end=11), Chunk(text="a")]

    assert assemble_chunks(chunks) == "b" + ELISION_MARKER + "a"


def test_assemble_empty():
    assert assemble_chunks([]) == ""


def test_truncate_chunks_stops_at_first_misfit(tokenizer):
    chunks = [
        Chunk(text=words(4)),
        Chunk(text=words(5)),
        Chunk(text=words(1)),
    ]

    kept = truncate_chunks(chunks, 8, tokenizer)

    assert kept == chunks[:1]
    assert truncate_chunks(chunks, 0, tokenizer) == []
    assert truncate_chunks(chunks, 10, tokenizer) == chunks
