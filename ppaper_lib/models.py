# --- ppaper_lib/models.py ---
"""
ppaper_lib/models.py: Data models for a structured academic paper.

Blocks and inline nodes are tagged unions: every variant is a dataclass with a
`type` discriminator, serialized with `asdict` and rebuilt by a tolerant
dispatcher that accepts the loosely-typed output of external producers.
"""
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Union

log_merge = logging.getLogger("ppaper.merge")


def strip_math_delimiters(latex: str) -> str:
    """Removes `$` delimiters from a math payload. Idempotent."""
    cleaned = (latex or "").strip()
    while cleaned.startswith("$") or cleaned.endswith("$"):
        cleaned = cleaned.strip("$").strip()
    return cleaned.replace("$", "")


# --- INLINE NODES ---
@dataclass
class TextNode:
    """A run of plain text, optionally styled (bold, italic, code, strike)."""

    content: str
    style: Optional[str] = None
    type: str = "text"


@dataclass
class LinkNode:
    """A hyperlink wrapping its own inline children."""

    url: str
    children: List["InlineNode"] = field(default_factory=list)
    title: Optional[str] = None
    type: str = "link"


@dataclass
class InlineMathNode:
    """Inline `$...$` math. The payload never carries the delimiters."""

    latex: str
    type: str = "inline-math"

    def __post_init__(self):
        self.latex = strip_math_delimiters(self.latex)


@dataclass
class CitationNode:
    """A bracketed citation such as [3] or [2-4], resolved to reference ids."""

    referenceIds: List[str] = field(default_factory=list)
    displayText: Optional[str] = None
    type: str = "citation"


@dataclass
class FigureRefNode:
    targetId: str
    displayText: Optional[str] = None
    type: str = "figure-ref"


@dataclass
class TableRefNode:
    targetId: str
    displayText: Optional[str] = None
    type: str = "table-ref"


@dataclass
class EquationRefNode:
    targetId: str
    displayText: Optional[str] = None
    type: str = "equation-ref"


InlineNode = Union[
    TextNode,
    LinkNode,
    InlineMathNode,
    CitationNode,
    FigureRefNode,
    TableRefNode,
    EquationRefNode,
]


@dataclass
class LocalizedContent:
    """Rich text in the two supported language channels."""

    en: List[InlineNode] = field(default_factory=list)
    zh: List[InlineNode] = field(default_factory=list)


@dataclass
class LocalizedText:
    en: str = ""
    zh: str = ""


# --- BLOCKS ---
@dataclass
class HeadingBlock:
    id: str
    level: int = 1
    content: LocalizedContent = field(default_factory=LocalizedContent)
    number: Optional[str] = None
    type: str = "heading"


@dataclass
class ParagraphBlock:
    id: str
    content: LocalizedContent = field(default_factory=LocalizedContent)
    align: Optional[str] = None
    type: str = "paragraph"


@dataclass
class MathBlock:
    """Display math. Multi-line, never wrapped in inline delimiters."""

    id: str
    latex: str = ""
    label: Optional[str] = None
    number: Optional[str] = None
    type: str = "math"


@dataclass
class FigureBlock:
    id: str
    src: str = ""
    alt: Optional[str] = None
    caption: LocalizedContent = field(default_factory=LocalizedContent)
    description: Optional[LocalizedContent] = None
    number: Optional[str] = None
    uploadedFilename: Optional[str] = None
    type: str = "figure"


@dataclass
class TableBlock:
    id: str
    headers: Optional[List[str]] = None
    rows: List[List[str]] = field(default_factory=list)
    align: Optional[List[str]] = None
    caption: LocalizedContent = field(default_factory=LocalizedContent)
    number: Optional[str] = None
    type: str = "table"


@dataclass
class CodeBlock:
    id: str
    code: str = ""
    language: Optional[str] = None
    caption: Optional[LocalizedContent] = None
    type: str = "code"


@dataclass
class ListItem:
    content: LocalizedContent = field(default_factory=LocalizedContent)
    level: int = 1


@dataclass
class OrderedListBlock:
    id: str
    items: List[ListItem] = field(default_factory=list)
    type: str = "ordered-list"


@dataclass
class UnorderedListBlock:
    id: str
    items: List[ListItem] = field(default_factory=list)
    type: str = "unordered-list"


@dataclass
class QuoteBlock:
    id: str
    content: LocalizedContent = field(default_factory=LocalizedContent)
    author: Optional[str] = None
    type: str = "quote"


@dataclass
class DividerBlock:
    id: str = ""
    type: str = "divider"


Block = Union[
    HeadingBlock,
    ParagraphBlock,
    MathBlock,
    FigureBlock,
    TableBlock,
    CodeBlock,
    OrderedListBlock,
    UnorderedListBlock,
    QuoteBlock,
    DividerBlock,
]

BLOCK_TYPES = {
    "heading": HeadingBlock,
    "paragraph": ParagraphBlock,
    "math": MathBlock,
    "figure": FigureBlock,
    "table": TableBlock,
    "code": CodeBlock,
    "ordered-list": OrderedListBlock,
    "unordered-list": UnorderedListBlock,
    "quote": QuoteBlock,
    "divider": DividerBlock,
}


# --- DOCUMENT STRUCTURE ---
@dataclass
class Section:
    """A heading-scoped container. Owns its content blocks and subsections."""

    id: str
    title: LocalizedText = field(default_factory=LocalizedText)
    content: List[Block] = field(default_factory=list)
    subsections: List["Section"] = field(default_factory=list)
    number: Optional[str] = None


@dataclass
class Reference:
    id: str
    title: str = ""
    authors: List[str] = field(default_factory=list)
    number: Optional[int] = None
    publication: Optional[str] = None
    year: Optional[int] = None
    doi: Optional[str] = None
    url: Optional[str] = None
    pages: Optional[str] = None
    volume: Optional[str] = None
    issue: Optional[str] = None


@dataclass
class Author:
    name: str
    affiliation: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Metadata:
    title: str = "Untitled"
    authors: List[Author] = field(default_factory=list)
    journal: Optional[str] = None
    publicationDate: Optional[str] = None
    doi: Optional[str] = None
    year: Optional[int] = None
    articleType: Optional[str] = None


@dataclass
class PaperDocument:
    """The root object of a parsed paper."""

    metadata: Metadata = field(default_factory=Metadata)
    abstract: LocalizedText = field(default_factory=LocalizedText)
    keywords: List[str] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    references: List[Reference] = field(default_factory=list)


# --- PIPELINE STATE ---
@dataclass
class ParseProgress:
    """The latest progress snapshot of one parse job."""

    status: str = "pending"
    percentage: int = 0
    message: str = ""
    currentStep: Optional[int] = None
    totalSteps: Optional[int] = None
    chunksProcessed: Optional[int] = None
    totalChunks: Optional[int] = None
    imagesProcessed: Optional[int] = None
    totalImages: Optional[int] = None
    startTime: Optional[float] = None
    endTime: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "ParseProgress":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class ChunkInfo:
    """One token-bounded window of the source. `content` starts with `carry`."""

    content: str
    index: int
    startLine: int
    endLine: int
    carry: str = ""

    @property
    def own_text(self) -> str:
        """The chunk text without the carried-over prefix."""
        if self.carry and self.content.startswith(self.carry):
            return self.content[len(self.carry) :].lstrip("\n")
        return self.content


@dataclass
class ChunkResult:
    """The blocks one producer emitted for one chunk or page."""

    index: int
    blocks: List[Any] = field(default_factory=list)
    lastBlockContinues: bool = False
    failed: bool = False


# --- HELPERS ---
def plain_text(nodes) -> str:
    """Flattens a list of inline nodes into plain text."""
    parts = []
    for node in nodes or []:
        if isinstance(node, TextNode):
            parts.append(node.content)
        elif isinstance(node, LinkNode):
            parts.append(plain_text(node.children))
        elif isinstance(node, InlineMathNode):
            parts.append(f"${node.latex}$")
        elif getattr(node, "displayText", None):
            parts.append(node.displayText)
    return "".join(parts)


def block_text(block) -> str:
    """Returns the English plain text carried by a block, if any."""
    content = getattr(block, "content", None)
    if isinstance(content, LocalizedContent):
        return plain_text(content.en)
    if isinstance(block, (OrderedListBlock, UnorderedListBlock)):
        return "\n".join(plain_text(item.content.en) for item in block.items)
    if isinstance(block, FigureBlock):
        return plain_text(block.caption.en)
    if isinstance(block, TableBlock):
        return plain_text(block.caption.en)
    return ""


def iter_blocks(sections):
    """Yields every content block of a section tree in depth-first order."""
    for section in sections:
        yield from section.content
        yield from iter_blocks(section.subsections)


def iter_sections(sections):
    for section in sections:
        yield section
        yield from iter_sections(section.subsections)


def _drop_none(value):
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value]
    return value


def to_dict(obj) -> Dict[str, Any]:
    """Serializes any model dataclass into a JSON-ready dictionary."""
    return _drop_none(asdict(obj))


# --- TOLERANT DESERIALIZATION ---
_REF_TARGET_KEYS = ("targetId", "figureId", "tableId", "equationId")


def inline_from_dict(data) -> InlineNode:
    """Builds an inline node. Strings and untyped objects become text nodes."""
    if isinstance(data, str):
        return TextNode(content=data)
    if not isinstance(data, dict):
        return TextNode(content="" if data is None else str(data))

    node_type = data.get("type")
    display = data.get("displayText")
    if node_type == "link":
        children = inline_list_from_data(data.get("children"))
        if not children and data.get("text"):
            children = [TextNode(content=str(data["text"]))]
        return LinkNode(url=str(data.get("url", "")), children=children, title=data.get("title"))
    if node_type == "inline-math":
        return InlineMathNode(latex=str(data.get("latex", "")))
    if node_type == "citation":
        ids = data.get("referenceIds") or []
        return CitationNode(referenceIds=[str(i) for i in ids], displayText=display)
    if node_type in ("figure-ref", "table-ref", "equation-ref"):
        target = next((data[k] for k in _REF_TARGET_KEYS if data.get(k)), "")
        cls = {
            "figure-ref": FigureRefNode,
            "table-ref": TableRefNode,
            "equation-ref": EquationRefNode,
        }[node_type]
        return cls(targetId=str(target), displayText=display)

    # Text, or anything missing a usable tag
    content = data.get("content", data.get("text", ""))
    style = data.get("style")
    if isinstance(style, dict):
        style = next((k for k, v in style.items() if v), None)
    if node_type not in (None, "text"):
        log_merge.debug("Coercing inline node of unknown type '%s' to text.", node_type)
    return TextNode(content="" if content is None else str(content), style=style)


def inline_list_from_data(data) -> List[InlineNode]:
    if data is None:
        return []
    if isinstance(data, (str, dict)):
        data = [data]
    return [inline_from_dict(item) for item in data]


def localized_content_from_data(data) -> LocalizedContent:
    """Accepts {en, zh}, a bare list, or a bare string."""
    if isinstance(data, LocalizedContent):
        return data
    if isinstance(data, dict) and ("en" in data or "zh" in data):
        return LocalizedContent(
            en=inline_list_from_data(data.get("en")),
            zh=inline_list_from_data(data.get("zh")),
        )
    return LocalizedContent(en=inline_list_from_data(data), zh=[])


def localized_text_from_data(data) -> LocalizedText:
    if isinstance(data, dict):
        return LocalizedText(en=str(data.get("en") or ""), zh=str(data.get("zh") or ""))
    return LocalizedText(en="" if data is None else str(data))


def _optional_str(value):
    return None if value in (None, "") else str(value)


def _list_items_from_data(data: dict) -> List[ListItem]:
    items = data.get("items")
    if not items and data.get("content") is not None:
        # A list carrying bare content is treated as a single item
        return [ListItem(content=localized_content_from_data(data["content"]))]
    result = []
    for item in items or []:
        if isinstance(item, dict) and "content" in item:
            level = item.get("level") or 1
            result.append(
                ListItem(content=localized_content_from_data(item["content"]), level=int(level))
            )
        else:
            result.append(ListItem(content=localized_content_from_data(item)))
    return result


def block_from_dict(data) -> Optional[Block]:
    """Builds a block from a loosely-typed dictionary, or None if unusable."""
    if not isinstance(data, dict):
        return None
    block_type = data.get("type")
    block_id = str(data.get("id") or "")

    if block_type == "heading":
        try:
            level = int(data.get("level") or 1)
        except (TypeError, ValueError):
            level = 1
        return HeadingBlock(
            id=block_id,
            level=min(6, max(1, level)),
            content=localized_content_from_data(data.get("content")),
            number=_optional_str(data.get("number")),
        )
    if block_type == "paragraph":
        return ParagraphBlock(
            id=block_id,
            content=localized_content_from_data(data.get("content")),
            align=data.get("align"),
        )
    if block_type == "math":
        return MathBlock(
            id=block_id,
            latex=strip_math_delimiters(str(data.get("latex") or "")),
            label=_optional_str(data.get("label")),
            number=_optional_str(data.get("number")),
        )
    if block_type == "figure":
        description = data.get("description")
        return FigureBlock(
            id=block_id,
            src=str(data.get("src") or ""),
            alt=_optional_str(data.get("alt")),
            caption=localized_content_from_data(data.get("caption")),
            description=localized_content_from_data(description) if description else None,
            number=_optional_str(data.get("number")),
            uploadedFilename=_optional_str(data.get("uploadedFilename")),
        )
    if block_type == "table":
        rows = [[str(c) for c in row] for row in data.get("rows") or [] if isinstance(row, list)]
        headers = data.get("headers")
        return TableBlock(
            id=block_id,
            headers=[str(h) for h in headers] if headers else None,
            rows=rows,
            align=data.get("align"),
            caption=localized_content_from_data(data.get("caption")),
            number=_optional_str(data.get("number")),
        )
    if block_type == "code":
        caption = data.get("caption")
        return CodeBlock(
            id=block_id,
            code=str(data.get("code") or ""),
            language=_optional_str(data.get("language")),
            caption=localized_content_from_data(caption) if caption else None,
        )
    if block_type in ("ordered-list", "unordered-list"):
        cls = OrderedListBlock if block_type == "ordered-list" else UnorderedListBlock
        return cls(id=block_id, items=_list_items_from_data(data))
    if block_type == "quote":
        return QuoteBlock(
            id=block_id,
            content=localized_content_from_data(data.get("content")),
            author=_optional_str(data.get("author")),
        )
    if block_type == "divider":
        return DividerBlock(id=block_id)

    log_merge.warning("Dropping block of unknown type '%s'.", block_type)
    return None


def section_from_dict(data: dict) -> Section:
    content = [b for b in (block_from_dict(d) for d in data.get("content") or []) if b]
    return Section(
        id=str(data.get("id") or ""),
        title=localized_text_from_data(data.get("title")),
        content=content,
        subsections=[section_from_dict(s) for s in data.get("subsections") or []],
        number=_optional_str(data.get("number")),
    )


def reference_from_dict(data: dict) -> Reference:
    known = {f.name for f in fields(Reference)}
    values = {k: v for k, v in data.items() if k in known}
    values["id"] = str(values.get("id") or "")
    values["title"] = str(values.get("title") or "")
    values["authors"] = [str(a) for a in values.get("authors") or []]
    return Reference(**values)


def metadata_from_dict(data: dict) -> Metadata:
    known = {f.name for f in fields(Metadata)}
    values = {k: v for k, v in (data or {}).items() if k in known}
    values["authors"] = [author_from_dict(a) for a in values.get("authors") or []]
    return Metadata(**values)


def author_from_dict(data) -> Author:
    """Coerces an author entry; a bare string is a name, a missing name is empty."""
    if not isinstance(data, dict):
        return Author(name=str(data))
    return Author(
        name=str(data.get("name") or ""),
        affiliation=data.get("affiliation") or None,
        email=data.get("email") or None,
    )


def document_from_dict(data: dict) -> PaperDocument:
    return PaperDocument(
        metadata=metadata_from_dict(data.get("metadata") or {}),
        abstract=localized_text_from_data(data.get("abstract")),
        keywords=[str(k) for k in data.get("keywords") or []],
        sections=[section_from_dict(s) for s in data.get("sections") or []],
        references=[reference_from_dict(r) for r in data.get("references") or []],
    )


def save_json(document: PaperDocument, output_path: str) -> None:
    """Serializes a PaperDocument to a JSON file."""
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(to_dict(document), f, indent=2, ensure_ascii=False)


def load_json(input_path: str) -> PaperDocument:
    """Deserializes a JSON file into a PaperDocument."""
    with open(input_path, "r", encoding="utf-8") as f:
        return document_from_dict(json.load(f))
