# --- ppaper_lib/markup.py ---
"""
ppaper_lib/markup.py: Reader for the line-oriented markup emitted by the
completion service.

A block starts with a marker line (`#PARA`, `#TABLE`, ...) followed by
`KEY: value` field lines. A field block runs until the next recognized marker,
so a stray `#` inside code or LaTeX does not end it. Lines that are not fields
continue the previous field's value.
"""
import logging
import re

from .ids import IdRegistry
from .inline import parse_rich_inline
from .models import (
    CodeBlock,
    DividerBlock,
    FigureBlock,
    HeadingBlock,
    ListItem,
    LocalizedContent,
    MathBlock,
    OrderedListBlock,
    PaperDocument,
    ParagraphBlock,
    QuoteBlock,
    Reference,
    TableBlock,
    UnorderedListBlock,
    strip_math_delimiters,
)
from .reconstructor import SectionTreeBuilder

log_markup = logging.getLogger("ppaper.markup")

MARKER_RE = re.compile(
    r"^#(HEADING[1-6]|PARA|MATH|FIGURE|TABLE|CODE|LIST-ORDERED|LIST-UNORDERED|QUOTE|DIVIDER|REF)\b(.*)$"
)
FIELD_RE = re.compile(r"^(\s*)([A-Z][A-Z0-9]*(?:-[A-Z0-9]+)*):\s?(.*)$")
BARE_DIVIDERS = ("---", "***")
INT_RE = re.compile(r"-?\d+")


def _to_int(value):
    m = INT_RE.search(value or "")
    return int(m.group()) if m else None


def _split_cells(value: str) -> list[str]:
    value = value.strip()
    if value.startswith("|"):
        value = value[1:]
    if value.endswith("|"):
        value = value[:-1]
    return [cell.strip() for cell in value.split("|")]


def code_language(argument: str) -> str | None:
    """Reads the language from `#CODE python` or `#CODE[python]`."""
    words = (argument or "").strip().strip("[]").split()
    if not words:
        return None
    return words[0].strip("[]") or None


class FieldBlock:
    """The raw lines and parsed fields following one marker line."""

    def __init__(self, marker: str, argument: str, line_no: int):
        self.marker = marker
        self.argument = argument.strip()
        self.line_no = line_no
        self.fields: list[tuple[str, str, int]] = []
        self.raw: list[str] = []

    def get(self, key: str, default=None):
        for name, value, _ in self.fields:
            if name == key:
                return value
        return default

    def all(self, key: str) -> list[str]:
        return [value for name, value, _ in self.fields if name == key]


class MarkupParser:
    """
    Turns markup text into content blocks and references.

    Every block gets a freshly allocated id from the run's registry. Unknown
    markers and malformed fields are logged and skipped; parsing never raises.
    """

    def __init__(self, registry: IdRegistry | None = None):
        self.registry = registry if registry is not None else IdRegistry()
        self._builders = {
            "PARA": self._build_paragraph,
            "MATH": self._build_math,
            "FIGURE": self._build_figure,
            "TABLE": self._build_table,
            "CODE": self._build_code,
            "LIST-ORDERED": self._build_list,
            "LIST-UNORDERED": self._build_list,
            "QUOTE": self._build_quote,
            "DIVIDER": self._build_divider,
        }

    # --- Block splitting ---
    def _split_blocks(self, text: str) -> list[FieldBlock]:
        blocks = []
        current = None
        for line_no, line in enumerate((text or "").splitlines()):
            stripped = line.strip()
            m = MARKER_RE.match(stripped)
            if m:
                current = FieldBlock(m.group(1), m.group(2), line_no)
                blocks.append(current)
                continue
            if stripped in BARE_DIVIDERS and (current is None or current.marker != "CODE"):
                blocks.append(FieldBlock("DIVIDER", "", line_no))
                current = None
                continue
            if current is None:
                if stripped.startswith("#"):
                    log_markup.debug("Skipping unknown marker at line %d: %.40s", line_no, stripped)
                elif stripped:
                    log_markup.debug("Skipping stray line %d: %.40s", line_no, stripped)
                continue

            current.raw.append(line)
            fm = FIELD_RE.match(line)
            if fm:
                current.fields.append((fm.group(2), fm.group(3).strip(), len(fm.group(1))))
            elif not stripped or current.marker == "CODE":
                continue
            elif current.marker == "MATH":
                current.fields.append(("LATEX", stripped, 0))
            elif current.fields:
                name, value, indent = current.fields[-1]
                current.fields[-1] = (name, f"{value} {stripped}".strip(), indent)
        return blocks

    # --- Public API ---
    def parse(self, text: str) -> list:
        """Parses every non-reference block in `text`, in order."""
        blocks = []
        for fb in self._split_blocks(text):
            if fb.marker == "REF":
                continue
            if fb.marker.startswith("HEADING"):
                block = self._build_heading(fb)
            else:
                block = self._builders[fb.marker](fb)
            if block is None:
                log_markup.debug("Dropped empty #%s block at line %d.", fb.marker, fb.line_no)
                continue
            block.id = self.registry.allocate(block.type)
            blocks.append(block)
        log_markup.debug("Parsed %d blocks from markup.", len(blocks))
        return blocks

    def parse_references(self, text: str) -> list[Reference]:
        """Reads `#REF` blocks; entries without a title are discarded."""
        references = []
        for fb in self._split_blocks(text):
            if fb.marker != "REF":
                continue
            title = fb.get("TITLE", "")
            if not title:
                log_markup.debug("Discarding #REF without TITLE at line %d.", fb.line_no)
                continue
            authors = [a.strip() for a in fb.get("AUTHORS", "").split(";") if a.strip()]
            references.append(
                Reference(
                    id="",
                    title=title,
                    authors=authors,
                    number=_to_int(fb.get("NUMBER")),
                    publication=fb.get("PUBLICATION") or None,
                    year=_to_int(fb.get("YEAR")),
                    doi=fb.get("DOI") or None,
                    url=fb.get("URL") or None,
                    pages=fb.get("PAGES") or None,
                    volume=fb.get("VOLUME") or None,
                    issue=fb.get("ISSUE") or None,
                )
            )
        log_markup.debug("Parsed %d references from markup.", len(references))
        return references

    # --- Builders ---
    def _localized(self, fb: FieldBlock, en_key: str, zh_key: str) -> LocalizedContent:
        return LocalizedContent(
            en=parse_rich_inline(fb.get(en_key, "")),
            zh=parse_rich_inline(fb.get(zh_key, "")),
        )

    def _build_heading(self, fb: FieldBlock):
        content = self._localized(fb, "EN", "ZH")
        if not content.en and not content.zh:
            return None
        return HeadingBlock(
            id="",
            level=int(fb.marker[-1]),
            content=content,
            number=fb.get("NUMBER") or None,
        )

    def _build_paragraph(self, fb: FieldBlock):
        content = self._localized(fb, "EN", "ZH")
        if not content.en and not content.zh:
            return None
        return ParagraphBlock(id="", content=content, align=fb.get("ALIGN") or None)

    def _build_math(self, fb: FieldBlock):
        latex = "\n".join(fb.all("LATEX")).strip()
        if not latex:
            return None
        return MathBlock(
            id="",
            latex=strip_math_delimiters(latex),
            label=fb.get("LABEL") or None,
            number=fb.get("NUMBER") or None,
        )

    def _build_figure(self, fb: FieldBlock):
        description = self._localized(fb, "DESC-EN", "DESC-ZH")
        return FigureBlock(
            id="",
            src=fb.get("SRC", ""),
            alt=fb.get("ALT") or None,
            caption=self._localized(fb, "CAPTION-EN", "CAPTION-ZH"),
            description=description if description.en or description.zh else None,
            number=fb.get("NUMBER") or None,
        )

    def _build_table(self, fb: FieldBlock):
        headers = fb.get("HEADERS")
        align = fb.get("ALIGN")
        return TableBlock(
            id="",
            headers=_split_cells(headers) if headers else None,
            rows=[_split_cells(row) for row in fb.all("ROW")],
            align=[a.lower() for a in _split_cells(align)] if align else None,
            caption=self._localized(fb, "CAPTION-EN", "CAPTION-ZH"),
            number=fb.get("NUMBER") or None,
        )

    def _build_code(self, fb: FieldBlock):
        code_lines = []
        for line in fb.raw:
            m = FIELD_RE.match(line)
            if m and m.group(2) in ("CAPTION-EN", "CAPTION-ZH"):
                continue
            code_lines.append(line)
        while code_lines and not code_lines[0].strip():
            code_lines.pop(0)
        while code_lines and not code_lines[-1].strip():
            code_lines.pop()
        caption = self._localized(fb, "CAPTION-EN", "CAPTION-ZH")
        return CodeBlock(
            id="",
            code="\n".join(code_lines),
            language=code_language(fb.argument),
            caption=caption if caption.en or caption.zh else None,
        )

    def _build_list(self, fb: FieldBlock):
        items = []
        for name, value, indent in fb.fields:
            if name == "ITEM-EN":
                items.append(
                    ListItem(
                        content=LocalizedContent(en=parse_rich_inline(value)),
                        level=indent // 2 + 1,
                    )
                )
            elif name == "ITEM-ZH":
                if items and not items[-1].content.zh:
                    items[-1].content.zh = parse_rich_inline(value)
                else:
                    items.append(
                        ListItem(
                            content=LocalizedContent(zh=parse_rich_inline(value)),
                            level=indent // 2 + 1,
                        )
                    )
        if not items:
            return None
        cls = OrderedListBlock if fb.marker == "LIST-ORDERED" else UnorderedListBlock
        return cls(id="", items=items)

    def _build_quote(self, fb: FieldBlock):
        content = self._localized(fb, "EN", "ZH")
        if not content.en and not content.zh:
            return None
        return QuoteBlock(id="", content=content, author=fb.get("AUTHOR") or None)

    def _build_divider(self, fb: FieldBlock):
        return DividerBlock()


def parse_markup_document(text: str, registry: IdRegistry | None = None) -> PaperDocument:
    """Parses a full markup document into sections and references."""
    registry = registry if registry is not None else IdRegistry()
    parser = MarkupParser(registry)
    blocks = parser.parse(text)
    sections = SectionTreeBuilder(registry).build(blocks)
    return PaperDocument(sections=sections, references=parser.parse_references(text))
