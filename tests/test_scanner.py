import pytest

from ppaper_lib.scanner import (
    LineScanner,
    MergedLines,
    ReflowCarry,
    ends_with_hyphen_break,
    ends_with_sentence_punct,
    estimate_tokens,
    normalize_text,
    reflow_lines,
    reflow_text,
    starts_new_block,
    to_lines,
)


def test_normalize_text_line_endings_and_bom():
    assert normalize_text("﻿a\r\nb\rc") == "a\nb\nc"
    assert normalize_text("") == ""


@pytest.mark.parametrize("text", ["a\nb", "a\n\nb\n", "\n", "single"])
def test_to_lines_reproduces_normalized_text(text):
    lines = to_lines(text)
    assert "\n".join(line.text for line in lines) == normalize_text(text)
    assert [line.index for line in lines] == list(range(len(lines)))


def test_sentence_and_hyphen_predicates():
    assert ends_with_sentence_punct("The end.")
    assert ends_with_sentence_punct('He said "yes."')
    assert ends_with_sentence_punct("中文句子。")
    assert not ends_with_sentence_punct("no ending here")
    assert ends_with_hyphen_break("infor-")
    assert not ends_with_hyphen_break("range 2-")


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


@pytest.mark.parametrize(
    "line",
    [
        "# Title",
        "> quoted",
        "```python",
        "- item",
        "2. item",
        "| a | b |",
        "![alt](img.png)",
        "---",
        "$$",
        "\\[",
        "\\begin{align*}",
    ],
)
def test_starts_new_block(line):
    assert starts_new_block(line)


def test_plain_text_does_not_start_a_block():
    assert not starts_new_block("Plain words in a sentence")
    assert not starts_new_block("")


def test_reflow_joins_hyphen_breaks_and_returns_carry():
    text, carry = reflow_lines(["This is a hyphen-", "ated word.", "Second sen-", "tence runs"])
    assert text == "This is a hyphenated word."
    assert carry == "Second sentence runs"


def test_reflow_uses_incoming_carry():
    text, carry = reflow_lines(["continues here."], "A sentence that")
    assert text == "A sentence that continues here."
    assert carry == ""


def test_reflow_text_keeps_tail():
    assert reflow_text(["One.", "Two"]) == "One.\nTwo"


def test_reflow_carry_take_empties_it():
    carry = ReflowCarry("pending")
    assert carry
    assert carry.take() == "pending"
    assert not carry


def test_scanner_cursor_operations():
    scanner = LineScanner("a\nb\nc")
    assert scanner.total == 3
    assert scanner.peek().text == "a"
    assert scanner.peek(2).text == "c"
    assert scanner.peek(3) is None
    assert scanner.next().text == "a"
    assert scanner.remaining_text() == "b\nc"
    scanner.back(5)
    assert scanner.index == 0
    for _ in range(3):
        scanner.next()
    assert scanner.eof()
    assert scanner.next() is None


def test_merge_ahead_stops_at_blank_line():
    scanner = LineScanner("Short one\nshort two\n\nlater")
    merged = scanner.merge_ahead(min_tokens=15)
    assert merged == MergedLines("Short one short two", 0, 1)
    scanner.consume_merged(merged)
    assert scanner.index == 2


def test_merge_ahead_stops_before_block_start():
    scanner = LineScanner("Title words\n# Heading")
    assert scanner.merge_ahead() == MergedLines("Title words", 0, 0)


def test_merge_ahead_keeps_block_start_line_alone():
    scanner = LineScanner("- item one\nmore text")
    merged = scanner.merge_ahead()
    assert merged.text == "- item one"
    assert merged.line_count == 1


def test_merge_ahead_skips_leading_blanks_and_respects_max_lines():
    scanner = LineScanner("\n\nHello")
    assert scanner.merge_ahead().start == 2

    scanner = LineScanner("\n".join(["a"] * 12))
    merged = scanner.merge_ahead(min_tokens=100, max_lines=10)
    assert (merged.start, merged.end) == (0, 9)


def test_merge_ahead_at_eof_returns_none():
    assert LineScanner("").merge_ahead() is None


def test_consume_merged_with_plain_string_advances():
    scanner = LineScanner("aaaa\nbbbb\ncccc\ndddd")
    scanner.consume_merged("aaaa bbbb")
    assert 2 <= scanner.index <= 3
