# --- ppaper_lib/inline.py ---
"""
ppaper_lib/inline.py: Inline tokenizers shared by every block carrying rich text.

`to_inline` is the minimal tokenizer used on native Markdown (text, links and
inline math). `parse_rich_inline` also resolves citations, figure/table/equation
references and emphasis styles, and is used on markup-DSL field text.
"""
import logging
import re

from .models import (
    CitationNode,
    EquationRefNode,
    FigureRefNode,
    InlineMathNode,
    LinkNode,
    TableRefNode,
    TextNode,
    strip_math_delimiters,
)

log_detect = logging.getLogger("ppaper.detect")

LINK_RE = re.compile(r"\[([^\]]+)\]\((\S+?)(?:\s+\"(.*?)\")?\)")
INLINE_MATH_RE = re.compile(r"\$([^$]+)\$")


def to_inline(text: str | None) -> list:
    """
    Splits text into Text, Link and InlineMath nodes.

    The earliest link or `$...$` span wins; text between matches becomes Text
    nodes. An unmatched `$` stays in the surrounding text.
    """
    if not text:
        return []
    nodes = []
    rest = text
    while rest:
        link_m = LINK_RE.search(rest)
        math_m = INLINE_MATH_RE.search(rest)
        candidates = [m for m in (link_m, math_m) if m]
        if not candidates:
            nodes.append(TextNode(content=rest))
            break

        m = min(candidates, key=lambda c: c.start())
        if m.start() > 0:
            nodes.append(TextNode(content=rest[: m.start()]))
        if m is link_m:
            nodes.append(
                LinkNode(
                    url=m.group(2),
                    children=[TextNode(content=m.group(1))],
                    title=m.group(3) or None,
                )
            )
        else:
            nodes.append(InlineMathNode(latex=strip_math_delimiters(m.group(1))))
        rest = rest[m.end() :]
    return nodes


def expand_citation_ids(spec: str) -> list[str]:
    """Turns '1-3' or '1, 4' into reference ids."""
    spec = spec.replace("–", "-")
    if "-" in spec:
        start, _, end = spec.partition("-")
        try:
            lo, hi = int(start.strip()), int(end.strip())
        except ValueError:
            return []
        if hi < lo or hi - lo > 200:
            return [f"ref-{lo}", f"ref-{hi}"]
        return [f"ref-{i}" for i in range(lo, hi + 1)]
    return [f"ref-{part.strip()}" for part in spec.split(",") if part.strip()]


def _citation(m):
    return CitationNode(referenceIds=expand_citation_ids(m.group(1)), displayText=m.group(0))


# On equal start and length the earlier pattern wins.
RICH_PATTERNS = [
    (re.compile(r"\[(\d+(?:,\s*\d+)*|\d+\s*[-–]\s*\d+)\]"), _citation),
    (
        re.compile(r"(?:Fig\.|Figure)\s+(\d+)", re.IGNORECASE),
        lambda m: FigureRefNode(targetId=f"fig-{m.group(1)}", displayText=m.group(0)),
    ),
    (
        re.compile(r"Table\s+(\d+)", re.IGNORECASE),
        lambda m: TableRefNode(targetId=f"table-{m.group(1)}", displayText=m.group(0)),
    ),
    (
        re.compile(r"(?:Eq\.|Equation)\s+\(?(\d+)\)?", re.IGNORECASE),
        lambda m: EquationRefNode(targetId=f"eq-{m.group(1)}", displayText=m.group(0)),
    ),
    (INLINE_MATH_RE, lambda m: InlineMathNode(latex=m.group(1))),
    (
        re.compile(r"\[([^\]]+)\]\(([^)\s]+)(?:\s+\"(.*?)\")?\)"),
        lambda m: LinkNode(
            url=m.group(2), children=[TextNode(content=m.group(1))], title=m.group(3) or None
        ),
    ),
    (re.compile(r"\*\*([^*]+)\*\*"), lambda m: TextNode(content=m.group(1), style="bold")),
    (re.compile(r"\*([^*]+)\*"), lambda m: TextNode(content=m.group(1), style="italic")),
    (re.compile(r"`([^`]+)`"), lambda m: TextNode(content=m.group(1), style="code")),
    (re.compile(r"~~([^~]+)~~"), lambda m: TextNode(content=m.group(1), style="strike")),
]


def parse_rich_inline(text: str | None) -> list:
    """
    Tokenizes text with references and styles. Overlaps resolve to the
    earliest match, then the longest; later overlapping matches are skipped.
    """
    if not text:
        return []

    matches = []
    for priority, (pattern, build) in enumerate(RICH_PATTERNS):
        for m in pattern.finditer(text):
            matches.append((m.start(), priority, m, build))
    matches.sort(key=lambda item: (item[0], -len(item[2].group(0)), item[1]))

    nodes = []
    last = 0
    for start, _, m, build in matches:
        if start < last:
            continue
        if start > last:
            nodes.append(TextNode(content=text[last:start]))
        nodes.append(build(m))
        last = m.end()
    if last < len(text):
        nodes.append(TextNode(content=text[last:]))
    return nodes
