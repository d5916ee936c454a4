import pytest

from ppaper_lib.chunker import chunk_lines, chunk_text, trailing_fragment
from ppaper_lib.scanner import to_lines


def test_chunks_respect_budget_and_reproduce_lines():
    text = "\n".join(f"Sentence number {i} is here." for i in range(10))
    chunks = chunk_text(text, max_tokens=20, overlap_tokens=200)
    assert [c.startLine for c in chunks] == [0, 2, 4, 6, 8]
    assert [c.endLine for c in chunks] == [1, 3, 5, 7, 9]
    assert all(c.carry == "" for c in chunks)
    assert "\n".join(c.own_text for c in chunks) == text
    assert [c.index for c in chunks] == list(range(5))


def test_unterminated_tail_is_carried_into_next_chunk():
    text = "First sentence. Second part that\ncontinues onward here."
    chunks = chunk_text(text, max_tokens=12, overlap_tokens=200)
    assert len(chunks) == 2
    assert chunks[1].carry == "Second part that"
    assert chunks[1].content == "Second part that\ncontinues onward here."
    assert chunks[1].own_text == "continues onward here."


def test_oversize_line_forms_its_own_chunk():
    lines = to_lines("short\n" + "y" * 100 + "\nend")
    chunks = chunk_lines(lines, max_tokens=10, overlap_tokens=0)
    assert len(chunks) == 3
    assert (chunks[1].startLine, chunks[1].endLine) == (1, 1)


def test_line_range_is_honored():
    text = "zero\none\ntwo\nthree\nfour"
    [chunk] = chunk_lines(to_lines(text), start=2, end=4)
    assert (chunk.startLine, chunk.endLine) == (2, 3)
    assert chunk.content == "two\nthree"


def test_empty_or_blank_input_has_no_chunks():
    assert chunk_text("") == []
    assert chunk_text("\n  \n") == []


def test_trailing_fragment_rules():
    assert trailing_fragment("A complete sentence.", 200) == ""
    assert trailing_fragment("Ends in a blank line\n", 200) == ""
    assert trailing_fragment("Text.\n# Heading", 200) == ""
    assert trailing_fragment("Done. Not done", 0) == ""
    assert trailing_fragment("Done. Not   done", 200) == "Not done"


def test_trailing_fragment_is_bounded_by_overlap():
    fragment = trailing_fragment("word " * 100 + "tail", 5)
    assert len(fragment) <= 20
    assert fragment.endswith("tail")


@pytest.mark.parametrize(
    "text, carry",
    [
        (
            "Alpha one. The results are as follows:\nthe value is high and\nkeeps going on until it ends here.",
            "the value is high and",
        ),
        (
            "First sentence here. Second part is inter-\nrupted by a break and\ncontinues to the end.",
            "Second part is interrupted by a break and",
        ),
    ],
)
def test_carry_follows_paragraph_reflow(text, carry):
    chunks = chunk_text(text, max_tokens=20, overlap_tokens=50)
    assert len(chunks) == 2
    assert chunks[1].carry == carry


def test_fragment_that_reads_as_a_heading_is_not_carried():
    assert trailing_fragment("Done. 2 Results are", 200) == ""
