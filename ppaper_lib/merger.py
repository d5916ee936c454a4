# --- ppaper_lib/merger.py ---
"""
ppaper_lib/merger.py: Merges per-chunk results into one consistent document.

The merger accepts typed blocks as well as the loosely-typed dictionaries that
external producers emit, joins paragraphs split across chunk boundaries,
guarantees id uniqueness through the run's IdRegistry, and hands the flat block
stream to the section tree builder.
"""
import logging
import re

from .ids import IdRegistry
from .models import (
    BLOCK_TYPES,
    HeadingBlock,
    LocalizedContent,
    LocalizedText,
    Metadata,
    PaperDocument,
    ParagraphBlock,
    QuoteBlock,
    Reference,
    TextNode,
    block_from_dict,
    block_text,
    document_from_dict,
    inline_from_dict,
    iter_sections,
    reference_from_dict,
)
from .reconstructor import PREAMBLE_SECTION_ID, SectionTreeBuilder

log_merge = logging.getLogger("ppaper.merge")

COPYRIGHT_RE = re.compile(r"copyright|permission|acm isbn", re.IGNORECASE)
NOISE_LINE_PATTERNS = [
    re.compile(r"^https?://doi\.org", re.IGNORECASE),
    re.compile(r"^\s*\d+\s*$"),
    re.compile(r"^(KDD|ICML|NeurIPS|CVPR|ICCV)\s+['’]?\d{2}", re.IGNORECASE),
]
MIN_CONTENT_CHARS = 10


# --- Coercion ---
def coerce_inline(data):
    """Returns an inline node; strings and untyped objects become text."""
    if hasattr(data, "type") and not isinstance(data, dict):
        return data
    return inline_from_dict(data)


def coerce_block(data):
    """Returns a typed block, or None for unusable or unknown input."""
    if isinstance(data, tuple(BLOCK_TYPES.values())):
        return data
    return block_from_dict(data)


def _coerce_result(result, position: int):
    """Normalizes a ChunkResult or a plain dict into (index, blocks, continues, failed)."""
    if isinstance(result, dict):
        index = result.get("index", position)
        raw_blocks = result.get("blocks") or []
        continues = bool(result.get("lastBlockContinues"))
        failed = bool(result.get("failed"))
    else:
        index, raw_blocks = result.index, result.blocks
        continues, failed = result.lastBlockContinues, result.failed
    blocks = [b for b in (coerce_block(raw) for raw in raw_blocks) if b is not None]
    return index, blocks, continues, failed


# --- Paragraph joining ---
def join_inline(left: list, right: list) -> list:
    """Concatenates two inline runs with a single space at the seam."""
    if not left:
        return list(right)
    if not right:
        return list(left)
    head, tail = left[-1], right[0]
    if (
        isinstance(head, TextNode)
        and isinstance(tail, TextNode)
        and head.style == tail.style
    ):
        joined = TextNode(
            content=f"{head.content.rstrip()} {tail.content.lstrip()}", style=head.style
        )
        return left[:-1] + [joined] + right[1:]
    return left + [TextNode(content=" ")] + right


def join_paragraphs(first: ParagraphBlock, second: ParagraphBlock) -> ParagraphBlock:
    """Merges `second` into `first`, language channel by channel."""
    first.content = LocalizedContent(
        en=join_inline(first.content.en, second.content.en),
        zh=join_inline(first.content.zh, second.content.zh),
    )
    return first


# --- Noise ---
def is_noise_block(block) -> bool:
    """True for PDF artifacts such as copyright lines, page numbers or venue stamps."""
    if not isinstance(block, (ParagraphBlock, QuoteBlock, HeadingBlock)):
        return False
    text = block_text(block).strip()
    if text.count("@") > 2 or COPYRIGHT_RE.search(text):
        return True
    if any(p.match(text) for p in NOISE_LINE_PATTERNS):
        return True
    return not isinstance(block, HeadingBlock) and len(text) < MIN_CONTENT_CHARS


class BlockMerger:
    """
    Combines ordered chunk results into a block stream and a section tree.

    Running the merger over its own flattened output (with no continuation
    flags) is a no-op.
    """

    def __init__(self, registry: IdRegistry | None = None, filter_noise: bool = False):
        self.registry = registry if registry is not None else IdRegistry()
        self.filter_noise = filter_noise

    def merge_results(self, results) -> list:
        """
        Flattens results in index order, joining the last paragraph of a result
        flagged `lastBlockContinues` with the first paragraph of the next one.
        """
        normalized = sorted(
            (_coerce_result(r, pos) for pos, r in enumerate(results or [])),
            key=lambda item: item[0],
        )
        merged = []
        continues = False
        joins = 0
        for index, blocks, last_continues, failed in normalized:
            for position, block in enumerate(blocks):
                previous = merged[-1] if merged else None
                if (
                    position == 0
                    and continues
                    and isinstance(previous, ParagraphBlock)
                    and isinstance(block, ParagraphBlock)
                ):
                    join_paragraphs(previous, block)
                    joins += 1
                    continue
                merged.append(block)
            # A result whose whole text was carried forward keeps the pending join
            if failed or blocks:
                continues = last_continues and not failed

        kept = []
        dropped = 0
        for block in merged:
            if self.filter_noise and is_noise_block(block):
                dropped += 1
                log_merge.debug("Dropping noise block: %.60s", block_text(block))
                continue
            block.id = self.registry.claim(block.id, block.type)
            kept.append(block)

        log_merge.info(
            "Merged %d results into %d blocks (%d continuations, %d noise dropped).",
            len(normalized),
            len(kept),
            joins,
            dropped,
        )
        return kept

    def merge(self, results) -> list:
        """Merges results and builds the section tree."""
        return SectionTreeBuilder(self.registry).build(self.merge_results(results))


def normalize_references(references, registry: IdRegistry | None = None) -> list[Reference]:
    """Fills default ids (`ref-N`) and numbers, and makes ids unique."""
    registry = registry if registry is not None else IdRegistry()
    normalized = []
    for i, ref in enumerate(references or []):
        if isinstance(ref, dict):
            ref = reference_from_dict(ref)
        elif not isinstance(ref, Reference):
            log_merge.warning("Skipping reference of type %s.", type(ref).__name__)
            continue
        ref.id = registry.claim(ref.id or f"ref-{i + 1}", "ref")
        if not ref.number:
            ref.number = i + 1
        ref.title = ref.title or ""
        ref.authors = list(ref.authors or [])
        normalized.append(ref)
    return normalized


def validate_document(document, registry: IdRegistry | None = None) -> PaperDocument:
    """Repairs a document in place: missing ids, titles and defaults are filled."""
    if isinstance(document, dict):
        document = document_from_dict(document)
    registry = registry if registry is not None else IdRegistry()

    if document.metadata is None:
        document.metadata = Metadata()
    if not (document.metadata.title or "").strip():
        document.metadata.title = "Untitled"
    if document.abstract is None:
        document.abstract = LocalizedText()

    seen = set()
    keywords = []
    for keyword in document.keywords or []:
        keyword = str(keyword).strip()
        if keyword and keyword.lower() not in seen:
            seen.add(keyword.lower())
            keywords.append(keyword)
    document.keywords = keywords

    for section in iter_sections(document.sections):
        section.id = registry.claim(section.id, "section")
        if section.id != PREAMBLE_SECTION_ID and not (section.title.en or section.title.zh):
            section.title = LocalizedText(en="Untitled", zh="无标题")
        section.content = [b for b in section.content if b is not None]
        for block in section.content:
            block.id = registry.claim(block.id, block.type)

    document.references = normalize_references(document.references, registry)
    return document
