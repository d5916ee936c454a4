# --- ppaper_lib/scanner.py ---
"""
ppaper_lib/scanner.py: Line normalization and the cursor-based LineScanner.

The scanner never raises: exhaustion is signalled with None and eof().
"""
import logging
import math
import re
from dataclasses import dataclass

log_scan = logging.getLogger("ppaper.scan")

SENTENCE_END_RE = re.compile(r"[.!?。！？；;：:][)\"'\]]*$")
HYPHEN_BREAK_RE = re.compile(r"[A-Za-z]-$")
BLOCK_START_PATTERNS = [
    re.compile(r"^#{1,6}\s+"),  # Markdown heading
    re.compile(r"^>"),  # Blockquote
    re.compile(r"^(```|~~~)"),  # Code fence
    re.compile(r"^[-*+•]\s+"),  # Unordered list marker
    re.compile(r"^(\d+|[ivxIVX]+|[A-Za-z])[.)]\s+"),  # Ordered list marker
    re.compile(r"^\|.*\|$"),  # Pipe table row
    re.compile(r"^!\[.*\]\(.*\)"),  # Image
    re.compile(r"^([-*_]\s*){3,}$"),  # Divider
    re.compile(r"^\$\$"),  # Display math
    re.compile(r"^\\\["),  # Display math
    re.compile(r"^\\begin\{(equation|align|gather)\*?\}"),  # LaTeX environment
]


@dataclass(frozen=True)
class Line:
    """A single source line. `index` is 0-based."""

    index: int
    text: str


@dataclass(frozen=True)
class MergedLines:
    """Text merged from the inclusive line range [start, end]."""

    text: str
    start: int
    end: int

    @property
    def line_count(self) -> int:
        return self.end - self.start + 1


def normalize_text(text: str) -> str:
    """Converts CRLF/CR line endings to LF and strips a leading BOM."""
    if not text:
        return ""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    if normalized.startswith("﻿"):
        normalized = normalized[1:]
    return normalized


def to_lines(text: str) -> list[Line]:
    return [Line(i, raw) for i, raw in enumerate(normalize_text(text).split("\n"))]


def is_blank(s: str) -> bool:
    return not s or not s.strip()


def ends_with_sentence_punct(s: str) -> bool:
    return bool(SENTENCE_END_RE.search(s.strip()))


def ends_with_hyphen_break(s: str) -> bool:
    return bool(HYPHEN_BREAK_RE.search(s.strip()))


def estimate_tokens(s: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(s or "") / 4)


def starts_new_block(s: str) -> bool:
    """Checks whether a line looks like the start of a non-paragraph block."""
    t = (s or "").strip()
    if not t:
        return False
    return any(p.search(t) for p in BLOCK_START_PATTERNS)


class ReflowCarry:
    """Unterminated sentence text carried from one paragraph pass to the next."""

    def __init__(self, text=""):
        self.text = text

    def take(self) -> str:
        text, self.text = self.text, ""
        return text

    def __bool__(self):
        return bool(self.text)


def reflow_lines(raw_lines: list[str], carry_in: str = "") -> tuple[str, str]:
    """
    Reflows hard-wrapped lines into sentence-aware continuous text.

    Lines are joined with spaces, `word-` + `break` is rejoined as `wordbreak`,
    and every run ending in sentence punctuation becomes one output line.
    Returns:
        tuple: (text, carry_out) where carry_out is the unterminated tail.
    """
    lines = [line or "" for line in raw_lines]
    parts = []
    buf = (carry_in or "").strip()

    i = 0
    while i < len(lines):
        cur = lines[i]
        nxt = lines[i + 1] if i + 1 < len(lines) else ""
        if ends_with_hyphen_break(cur) and nxt.strip() and not starts_new_block(nxt):
            lines[i + 1] = re.sub(r"-\s*$", "", cur.rstrip()) + nxt.lstrip()
            i += 1
            continue

        trimmed = cur.strip()
        if trimmed:
            buf = f"{buf} {trimmed}" if buf else trimmed
            if ends_with_sentence_punct(trimmed):
                parts.append(buf)
                buf = ""
        i += 1

    return "\n".join(parts), buf


def reflow_text(raw_lines: list[str]) -> str:
    """Reflows lines and keeps any unterminated tail in the text."""
    text, tail = reflow_lines(raw_lines)
    return "\n".join(p for p in (text, tail) if p)


class LineScanner:
    """A cursor over normalized lines with peek, look-ahead and back-tracking."""

    def __init__(self, source):
        if isinstance(source, str):
            self.lines = to_lines(source)
        else:
            self.lines = list(source)
        self._i = 0

    def eof(self) -> bool:
        return self._i >= len(self.lines)

    @property
    def index(self) -> int:
        return self._i

    @property
    def total(self) -> int:
        return len(self.lines)

    def peek(self, offset: int = 0) -> Line | None:
        k = self._i + offset
        return self.lines[k] if 0 <= k < len(self.lines) else None

    def next(self) -> Line | None:
        if self.eof():
            return None
        line = self.lines[self._i]
        self._i += 1
        return line

    def back(self, steps: int = 1):
        self._i = max(0, self._i - steps)

    def seek(self, index: int):
        self._i = min(max(0, index), len(self.lines))

    def current(self) -> Line | None:
        """Returns the most recently consumed line."""
        if self._i == 0 or self.eof():
            return None
        return self.lines[self._i - 1]

    def remaining_text(self) -> str:
        """Everything not yet consumed, joined verbatim."""
        return "\n".join(line.text for line in self.lines[self._i :])

    def merge_ahead(self, min_tokens: int = 15, max_lines: int = 10) -> MergedLines | None:
        """
        Greedily joins short consecutive lines into one classification unit.

        Leading blank lines are skipped. Merging stops at a blank line, after
        `max_lines` lines, once `min_tokens` is reached, or before a line that
        starts a new block. A block-start line is never merged with the lines
        after it. The exact line range is returned.
        """
        texts = []
        tokens = 0
        offset = 0
        start = end = None

        while len(texts) < max_lines:
            line = self.peek(offset)
            if line is None:
                break
            text = line.text.strip()
            if is_blank(text):
                if texts:
                    break
                offset += 1
                continue
            if texts and starts_new_block(text):
                break

            texts.append(text)
            tokens += estimate_tokens(text)
            start = line.index if start is None else start
            end = line.index
            offset += 1
            if tokens >= min_tokens or (len(texts) == 1 and starts_new_block(text)):
                break

        if not texts:
            return None
        merged = MergedLines(" ".join(texts), start, end)
        log_scan.debug(
            "Merged lines %d-%d (%d tokens): %.60s", merged.start, merged.end, tokens, merged.text
        )
        return merged

    def consume_merged(self, merged):
        """
        Advances past merged lines.

        Given a MergedLines the cursor lands exactly after its range. Given a
        plain string the number of lines is re-estimated from its token count.
        """
        if isinstance(merged, MergedLines):
            self.seek(self._position_of(merged.end) + 1)
            return

        target = estimate_tokens(merged or "")
        consumed = 0
        while not self.eof() and consumed < target:
            consumed += estimate_tokens(self.next().text)
            if consumed >= target * 0.9:
                break

    def _position_of(self, line_index: int) -> int:
        """Maps a Line.index back to a cursor position."""
        if 0 <= line_index < len(self.lines) and self.lines[line_index].index == line_index:
            return line_index
        for pos, line in enumerate(self.lines):
            if line.index == line_index:
                return pos
        return len(self.lines) - 1
