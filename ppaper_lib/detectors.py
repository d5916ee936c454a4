# --- ppaper_lib/detectors.py ---
"""
ppaper_lib/detectors.py: Block recognizers for native Markdown / PDF text.

Every detector takes a LineScanner and returns a block or None. A detector only
keeps lines consumed after it has positively identified its block; when it
declines, the scanner is back at the entry position. The paragraph detector is
the fallback and may consume lines that end up entirely in the carry.
"""
import logging
import re

from .ids import IdRegistry
from .inline import to_inline
from .models import (
    CodeBlock,
    DividerBlock,
    FigureBlock,
    HeadingBlock,
    ListItem,
    LocalizedContent,
    MathBlock,
    OrderedListBlock,
    ParagraphBlock,
    QuoteBlock,
    TableBlock,
    UnorderedListBlock,
    plain_text,
)
from .scanner import (
    LineScanner,
    ReflowCarry,
    is_blank,
    reflow_lines,
    reflow_text,
    starts_new_block,
)

log_detect = logging.getLogger("ppaper.detect")

FENCE_RE = re.compile(r"^(\s*)(```|~~~)\s*([\w+#.-]+)?(?:\s+[^`]*)?\s*$")
TABLE_ROW_RE = re.compile(r"^\s*\|.*\|\s*$")
TABLE_DELIM_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)+\|?\s*$")
TABLE_CAPTION_RE = re.compile(r"^\s*Table\s*(\d*)\s*[:.\-]\s*(.*)$", re.IGNORECASE)
IMAGE_RE = re.compile(r"^\s*!\[(.*?)\]\((\S+?)(?:\s+\"(.*?)\")?\)\s*$")
FIGURE_CAPTION_RE = re.compile(r"^\s*(?:Figure|Fig\.)\s*(\d+)\s*[:.]\s*", re.IGNORECASE)
QUOTE_RE = re.compile(r"^\s*>")
QUOTE_AUTHOR_RE = re.compile(r"^(?:—|–|--|-)\s*(.+)$")
DIVIDER_RE = re.compile(r"^\s*([-*_]\s*){3,}\s*$")
MATH_ENV_RE = re.compile(r"^\s*\\begin\{((?:equation|align|gather)\*?)\}")
MATH_LABEL_RE = re.compile(r"\\label\{([^}]*)\}")
MATH_TAG_RE = re.compile(r"\\tag\{([^}]*)\}")
UNORDERED_RE = re.compile(r"^(\s*)([-*+•])\s+(.*)$")
ORDERED_RE = re.compile(r"^(\s*)(\d+|[ivxIVX]+|[A-Za-z])([.)])\s+(.*)$")
MD_HEADING_RE = re.compile(r"^\s*(#{1,6})\s+(.+?)\s*#*\s*$")
NUMBERED_HEADING_RE = re.compile(r"^((?:\d{1,2}\.)+\d{0,2}|\d{1,2})\s+(.+)$")
LETTERED_HEADING_RE = re.compile(r"^([IVXivx]+|[A-Za-z])[.)]\s+(.+)$")
NUMBERING_PREFIX_RE = re.compile(
    r"^((?:\d+\.)*\d+\.?|[IVXivx]+[.)]|[A-Za-z][.)]|[\(\[\{]\d+[\)\]\}])\s+(.+)$"
)
REFERENCES_HEADING_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\d+\.?\s+)?(references|bibliography|参考文献)\s*:?\s*$",
    re.IGNORECASE,
)


def _content(text: str) -> LocalizedContent:
    return LocalizedContent(en=to_inline(text), zh=[])


# --- HEADINGS ---
def split_numbering(title: str) -> tuple[str | None, str]:
    """Separates a leading section number ('2.1', 'IV.', 'A)') from a title."""
    m = NUMBERING_PREFIX_RE.match(title.strip())
    if not m:
        return None, title.strip()
    number = m.group(1).strip().rstrip(".)").strip("([{}])")
    return number, m.group(2).strip()


def looks_like_heading_text(title: str) -> bool:
    """Checks that a numbered line reads like a title rather than prose."""
    title = title.strip()
    if not title or len(title) > 120 or len(title.split()) > 15:
        return False
    if title[-1] in ".,;!?" and not title.endswith("..."):
        return False
    first = title[0]
    return first.isupper() or first.isdigit() or not first.isascii()


def numbered_heading_level(prefix: str) -> int:
    """Depth of a dotted numeric prefix: separators + 1, capped at 6."""
    return min(6, prefix.rstrip(".").count(".") + 1)


def match_heading(text: str):
    """Returns (level, number, title) for a heading line, or None."""
    m = MD_HEADING_RE.match(text)
    if m:
        number, title = split_numbering(m.group(2))
        if not title:
            return None
        return len(m.group(1)), number, title

    t = text.strip()
    m = NUMBERED_HEADING_RE.match(t)
    if m and looks_like_heading_text(m.group(2)):
        _, title = split_numbering(m.group(2))
        return numbered_heading_level(m.group(1)), m.group(1).rstrip("."), title
    m = LETTERED_HEADING_RE.match(t)
    if m and looks_like_heading_text(m.group(2)):
        return 1, m.group(1), split_numbering(m.group(2))[1]
    return None


def detect_heading(scanner: LineScanner):
    line = scanner.peek()
    if not line:
        return None
    found = match_heading(line.text)
    if not found:
        return None
    level, number, title = found
    scanner.next()
    log_detect.debug("Heading L%d (%s): %s", level, number, title)
    return HeadingBlock(id="", level=level, content=_content(title), number=number)


# --- CODE ---
def detect_code(scanner: LineScanner):
    first = scanner.peek()
    if not first:
        return None
    fence = FENCE_RE.match(first.text)
    if not fence:
        return None
    scanner.next()
    closing = re.compile(rf"^\s*{re.escape(fence.group(2))}\s*$")
    lines = []
    while not scanner.eof():
        line = scanner.next()
        if closing.match(line.text):
            break
        lines.append(line.text)
    return CodeBlock(id="", code="\n".join(lines), language=fence.group(3) or None)


# --- MATH ---
def _finish_math(body_lines: list[str]) -> MathBlock:
    latex = "\n".join(body_lines).strip()
    label = MATH_LABEL_RE.search(latex)
    tag = MATH_TAG_RE.search(latex)
    return MathBlock(
        id="",
        latex=latex,
        label=label.group(1) if label else None,
        number=tag.group(1) if tag else None,
    )


def _collect_delimited(scanner: LineScanner, opener: str, closer: str):
    """Reads an `opener ... closer` region, on one or many lines."""
    start = scanner.index
    first = scanner.next().text.strip()[len(opener) :]
    if first.rstrip().endswith(closer) and first.strip() != "":
        return [first.rstrip()[: -len(closer)]]
    body = [first] if first.strip() else []
    while not scanner.eof():
        text = scanner.next().text
        stripped = text.rstrip()
        if stripped.endswith(closer):
            tail = stripped[: -len(closer)]
            if tail.strip():
                body.append(tail)
            return body
        body.append(text)
    # Unterminated: decline so the text is treated as prose
    scanner.seek(start)
    return None


def detect_block_math(scanner: LineScanner):
    first = scanner.peek()
    if not first:
        return None
    stripped = first.text.strip()

    if stripped.startswith("$$"):
        body = _collect_delimited(scanner, "$$", "$$")
        return _finish_math(body) if body is not None else None
    if stripped.startswith("\\["):
        body = _collect_delimited(scanner, "\\[", "\\]")
        return _finish_math(body) if body is not None else None

    env = MATH_ENV_RE.match(first.text)
    if env:
        start = scanner.index
        end_re = re.compile(rf"\\end\{{{re.escape(env.group(1))}\}}")
        body = [scanner.next().text.strip()]
        if end_re.search(body[0]):
            return _finish_math(body)
        while not scanner.eof():
            text = scanner.next().text
            body.append(text)
            if end_re.search(text):
                return _finish_math(body)
        scanner.seek(start)
    return None


# --- TABLES ---
def _split_row(text: str) -> list[str]:
    row = text.strip()
    if row.startswith("|"):
        row = row[1:]
    if row.endswith("|"):
        row = row[:-1]
    return [cell.strip() for cell in row.split("|")]


def _column_align(cell: str) -> str:
    cell = cell.strip()
    if cell.startswith(":") and cell.endswith(":"):
        return "center"
    if cell.endswith(":"):
        return "right"
    return "left"


def detect_table(scanner: LineScanner):
    first = scanner.peek()
    if not first or not TABLE_ROW_RE.match(first.text):
        return None
    second = scanner.peek(1)
    if not second or not TABLE_DELIM_RE.match(second.text):
        return None
    scanner.next()
    scanner.next()

    headers = _split_row(first.text)
    align = [_column_align(c) for c in _split_row(second.text)]
    rows = []
    while not scanner.eof() and TABLE_ROW_RE.match(scanner.peek().text):
        rows.append(_split_row(scanner.next().text))

    caption = LocalizedContent()
    number = None
    look = scanner.peek()
    if look and TABLE_CAPTION_RE.match(look.text):
        m = TABLE_CAPTION_RE.match(scanner.next().text)
        number = m.group(1) or None
        caption = _content(m.group(2).strip())
    log_detect.debug("Table with %d columns and %d rows.", len(headers), len(rows))
    return TableBlock(id="", headers=headers, rows=rows, align=align, caption=caption, number=number)


# --- FIGURES ---
def detect_image(scanner: LineScanner):
    first = scanner.peek()
    if not first:
        return None
    m = IMAGE_RE.match(first.text)
    if not m:
        return None
    scanner.next()
    alt, src, title = m.group(1), m.group(2), m.group(3) or ""

    caption_text, number = title, None
    look = scanner.peek()
    if look:
        cap = FIGURE_CAPTION_RE.match(look.text)
        if cap:
            scanner.next()
            number = cap.group(1) or None
            caption_text = look.text[cap.end() :].strip()
    return FigureBlock(
        id="", src=src, alt=alt or None, caption=_content(caption_text), number=number
    )


# --- QUOTES AND DIVIDERS ---
def detect_blockquote(scanner: LineScanner):
    first = scanner.peek()
    if not first or not QUOTE_RE.match(first.text):
        return None
    lines = []
    while not scanner.eof() and QUOTE_RE.match(scanner.peek().text):
        lines.append(re.sub(r"^\s*>\s?", "", scanner.next().text))

    author = None
    while lines and is_blank(lines[-1]):
        lines.pop()
    if len(lines) > 1:
        m = QUOTE_AUTHOR_RE.match(lines[-1].strip())
        if m:
            author = m.group(1).strip()
            lines.pop()
    return QuoteBlock(id="", content=_content(reflow_text(lines)), author=author)


def detect_divider(scanner: LineScanner):
    first = scanner.peek()
    if not first or not DIVIDER_RE.match(first.text):
        return None
    scanner.next()
    return DividerBlock(id="")


# --- LISTS ---
def _list_marker(text: str):
    """Returns (indent, ordered, item_text) for a list-item line, or None."""
    m = UNORDERED_RE.match(text)
    if m:
        return len(m.group(1)), False, m.group(3)
    m = ORDERED_RE.match(text)
    if m:
        return len(m.group(1)), True, m.group(4)
    return None


def _next_non_blank(scanner: LineScanner, offset: int):
    while True:
        line = scanner.peek(offset)
        if line is None or not is_blank(line.text):
            return line, offset
        offset += 1


def detect_list(scanner: LineScanner):
    first = scanner.peek()
    if not first:
        return None
    marker = _list_marker(first.text)
    if not marker:
        return None
    _, ordered, first_text = marker

    if ordered:
        # A lone "1. Introduction" or "IV. Results" line is a heading, not a list
        following, _ = _next_non_blank(scanner, 1)
        if (
            (following is None or not _list_marker(following.text))
            and looks_like_heading_text(first_text)
            and match_heading(first.text)
        ):
            return None

    items = []
    indent_stack = []
    while not scanner.eof():
        line = scanner.peek()
        if is_blank(line.text):
            following, offset = _next_non_blank(scanner, 0)
            if following is None or not _list_marker(following.text):
                break
            scanner.seek(scanner.index + offset)
            continue
        if DIVIDER_RE.match(line.text):
            break
        marker = _list_marker(line.text)
        if not marker:
            break
        indent, item_ordered, text = marker
        if indent_stack and indent <= indent_stack[0] and item_ordered != ordered:
            break
        scanner.next()

        item_lines = [text]
        while not scanner.eof():
            look = scanner.peek()
            if is_blank(look.text):
                following, offset = _next_non_blank(scanner, 0)
                if (
                    following is not None
                    and len(following.text) - len(following.text.lstrip()) > indent
                    and not _list_marker(following.text)
                    and not starts_new_block(following.text)
                ):
                    scanner.seek(scanner.index + offset)
                    continue
                break
            look_indent = len(look.text) - len(look.text.lstrip())
            if look_indent <= indent or _list_marker(look.text) or starts_new_block(look.text):
                break
            item_lines.append(look.text.strip())
            scanner.next()

        while indent_stack and indent < indent_stack[-1]:
            indent_stack.pop()
        if not indent_stack or indent > indent_stack[-1]:
            indent_stack.append(indent)
        items.append(ListItem(content=_content(reflow_text(item_lines)), level=len(indent_stack)))

    if not items:
        return None
    cls = OrderedListBlock if ordered else UnorderedListBlock
    log_detect.debug("%s with %d items.", cls.__name__, len(items))
    return cls(id="", items=items)


# --- PARAGRAPHS ---
def detect_paragraph(scanner: LineScanner, carry: ReflowCarry):
    """
    Fallback detector. Consumes prose up to a blank line or a block start and
    reflows it, prepending the carry. An unterminated tail goes back into the
    carry; if nothing but the tail remains, None is returned.

    The first line is taken even when it looks like a block start: this only
    runs after every other detector has declined it.
    """
    first = scanner.peek()
    if not first or is_blank(first.text):
        return None

    lines = []
    while not scanner.eof():
        line = scanner.peek()
        if is_blank(line.text):
            scanner.next()
            break
        if lines and starts_new_block(line.text):
            break
        lines.append(line.text)
        scanner.next()

    text, carry.text = reflow_lines(lines, carry.take())
    if not text.strip():
        return None
    return ParagraphBlock(id="", content=_content(text))


def paragraph_from_text(text: str) -> ParagraphBlock:
    return ParagraphBlock(id="", content=_content(text))


DETECTORS = [
    detect_code,
    detect_block_math,
    detect_table,
    detect_image,
    detect_blockquote,
    detect_divider,
    detect_list,
    detect_heading,
]


def parse_blocks(
    source,
    registry: IdRegistry | None = None,
    carry: ReflowCarry | None = None,
    stop_at_references: bool = True,
    flush_carry: bool = True,
) -> list:
    """
    Runs the detectors in priority order over a scanner (or raw text).

    The carry is flushed as its own paragraph before a heading and, when
    `flush_carry` is set, at the end of input. Parsing stops after a
    References/Bibliography heading, leaving the reference list unconsumed.
    """
    scanner = source if isinstance(source, LineScanner) else LineScanner(source)
    registry = registry if registry is not None else IdRegistry()
    carry = carry if carry is not None else ReflowCarry()
    blocks = []

    def emit(block):
        block.id = registry.claim(block.id, block.type)
        blocks.append(block)

    while not scanner.eof():
        line = scanner.peek()
        if is_blank(line.text):
            scanner.next()
            continue
        if stop_at_references and REFERENCES_HEADING_RE.match(line.text):
            log_detect.debug("References heading at line %d, stopping.", line.index)
            scanner.next()
            break

        block = None
        for detect in DETECTORS:
            block = detect(scanner)
            if block:
                break

        if block:
            if isinstance(block, HeadingBlock) and carry:
                emit(paragraph_from_text(carry.take()))
            emit(block)
            continue

        block = detect_paragraph(scanner, carry)
        if block:
            emit(block)

    if flush_carry and carry:
        emit(paragraph_from_text(carry.take()))
    log_detect.debug(
        "Parsed %d blocks (%s).",
        len(blocks),
        ", ".join(sorted({b.type for b in blocks})) or "none",
    )
    return blocks


def unterminated_tail(source) -> str:
    """Returns the whitespace-squashed carry left after parsing `source` without a final flush."""
    carry = ReflowCarry()
    parse_blocks(source, carry=carry, flush_carry=False)
    return " ".join(carry.text.split())


def heading_title(block: HeadingBlock) -> str:
    return plain_text(block.content.en).strip()
