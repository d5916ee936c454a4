# --- ppaper_lib/chunker.py ---
"""
ppaper_lib/chunker.py: Splits a document into token-bounded, overlapping windows.

The carry handed to the next chunk is cut from the unterminated tail that the
detector grammar leaves after parsing a chunk, so a local parse of the chunk
always ends with exactly the text the next chunk re-reads.
"""
import logging
import re

from .detectors import match_heading, unterminated_tail
from .models import ChunkInfo
from .scanner import (
    Line,
    estimate_tokens,
    is_blank,
    starts_new_block,
    to_lines,
)

log_chunk = logging.getLogger("ppaper.chunk")

SENTENCE_TERMINATOR_RE = re.compile(r"[.!?。！？；;：:][)\"'\]]*(?=\s|$)")


def trailing_fragment(text: str, overlap_tokens: int) -> str:
    """
    Returns the unterminated sentence at the end of `text`, limited to the last
    `overlap_tokens` worth of characters and cut at a word boundary. Empty if
    the text ends a sentence, ends in a blank line or a block, or if the
    fragment itself would read as a block start.
    """
    if overlap_tokens <= 0:
        return ""
    last_line = text.split("\n")[-1]
    if is_blank(last_line) or starts_new_block(last_line):
        return ""

    tail = unterminated_tail(text)
    ends = list(SENTENCE_TERMINATOR_RE.finditer(tail))
    if ends:
        tail = tail[ends[-1].end() :].strip()

    limit = overlap_tokens * 4
    kept = []
    size = -1
    for word in reversed(tail.split()):
        size += len(word) + 1
        if kept and size > limit:
            break
        kept.append(word)
    fragment = " ".join(reversed(kept))
    if starts_new_block(fragment) or match_heading(fragment):
        return ""
    return fragment


def chunk_lines(
    lines,
    max_tokens: int = 3000,
    overlap_tokens: int = 200,
    start: int = 0,
    end: int | None = None,
) -> list[ChunkInfo]:
    """
    Accumulates lines into chunks of at most `max_tokens` estimated tokens.

    When a chunk closes, its unterminated trailing sentence is copied to the
    start of the next chunk as `carry`. A single line larger than the budget
    forms a chunk of its own.
    Args:
        lines: Lines (or raw text) of the normalized document.
        start, end: Half-open range of line positions to chunk.
    """
    if isinstance(lines, str):
        lines = to_lines(lines)
    end = len(lines) if end is None else min(end, len(lines))
    window: list[Line] = lines[start:end]
    chunks: list[ChunkInfo] = []
    if not window or all(is_blank(line.text) for line in window):
        return chunks

    buf: list[Line] = []
    carry = ""
    tokens = 0

    def close_chunk():
        nonlocal buf, carry, tokens
        own = "\n".join(line.text for line in buf)
        content = f"{carry}\n{own}" if carry else own
        chunk = ChunkInfo(
            content=content,
            index=len(chunks),
            startLine=buf[0].index,
            endLine=buf[-1].index,
            carry=carry,
        )
        chunks.append(chunk)
        log_chunk.debug(
            "Chunk %d: lines %d-%d, ~%d tokens, carry %d chars.",
            chunk.index,
            chunk.startLine,
            chunk.endLine,
            tokens,
            len(carry),
        )
        carry = trailing_fragment(content, overlap_tokens)
        buf = []
        tokens = estimate_tokens(carry)

    for line in window:
        line_tokens = estimate_tokens(line.text) + 1
        if buf and tokens + line_tokens > max_tokens:
            close_chunk()
        buf.append(line)
        tokens += line_tokens

    if buf:
        close_chunk()

    log_chunk.info(
        "Split lines %d-%d into %d chunks (max %d tokens, overlap %d).",
        start,
        end - 1,
        len(chunks),
        max_tokens,
        overlap_tokens,
    )
    return chunks


def chunk_text(text: str, max_tokens: int = 3000, overlap_tokens: int = 200) -> list[ChunkInfo]:
    return chunk_lines(to_lines(text), max_tokens, overlap_tokens)
