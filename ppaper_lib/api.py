# --- ppaper_lib/api.py ---
"""
ppaper_lib/api.py: High-level parse operations used by the job orchestrator.

Local operations run the detector grammar. Completion-backed operations wrap a
ChatCompletionClient call, parse its reply and degrade to a typed fallback
instead of raising, except for cancellation.
"""
import logging
import re

from core.llm_utils import LLMError, extract_json_from_llm_response, format_text_for_log
from .constants import (
    PROMPT_REGISTRY,
    STRUCTURE_HEAD_CHARS,
    STRUCTURE_TAIL_CHARS,
    TRANSLATION_BATCH_SIZE,
    TRANSLATION_SEPARATOR,
)
from .detectors import REFERENCES_HEADING_RE, paragraph_from_text, parse_blocks
from .ids import IdRegistry
from .inline import to_inline
from .markup import MarkupParser
from .merger import normalize_references
from .models import (
    ChunkInfo,
    ChunkResult,
    HeadingBlock,
    InlineMathNode,
    LocalizedText,
    ParagraphBlock,
    plain_text,
    iter_blocks,
    iter_sections,
    strip_math_delimiters,
)
from .scanner import LineScanner, ReflowCarry, ends_with_sentence_punct

log = logging.getLogger("ppaper.api")
log_llm = logging.getLogger("ppaper.llm")

STRUCTURE_KEYS = ("titleEnd", "abstractStart", "abstractEnd", "contentStart", "referencesStart")
SEPARATOR_SPLIT_RE = re.compile(r"\n?" + re.escape(TRANSLATION_SEPARATOR) + r"\n?")
STRUCTURE_GAP = "\n\n...(middle omitted)...\n\nEnd of the paper:\n"


def squash(text: str) -> str:
    return " ".join((text or "").split())


def _ask(client, key: str, cancel_check=None, **fields) -> str:
    """Fills a registry prompt and sends it. Raises LLMError on failure."""
    if cancel_check:
        cancel_check()
    prompt = PROMPT_REGISTRY[key]
    return client.complete(
        prompt["system"], prompt["user"].format(**fields), max_tokens=prompt["max_tokens"]
    )


# --- Chunk parsing ---
def parse_chunk_locally(
    chunk: ChunkInfo, registry: IdRegistry, next_carry: str | None = None
) -> ChunkResult:
    """
    Parses one chunk with the detector grammar.

    The chunker cuts the next chunk's carry from this chunk's unterminated
    tail, so the tail always ends with it: a tail equal to the carry is
    dropped since the next chunk re-reads it, and a longer tail is emitted up
    to the carry and flagged to continue into the next chunk's first paragraph.
    """
    carry = ReflowCarry()
    has_next = next_carry is not None
    blocks = parse_blocks(
        LineScanner(chunk.content), registry, carry=carry, flush_carry=not has_next
    )
    continues = False
    tail = squash(carry.take())
    if tail:
        overlap = squash(next_carry)
        if overlap and tail == overlap:
            log.debug("Chunk %d: tail re-read by next chunk, dropped.", chunk.index)
        elif overlap and tail.endswith(" " + overlap):
            block = paragraph_from_text(tail[: len(tail) - len(overlap)].strip())
            block.id = registry.claim("", block.type)
            blocks.append(block)
            continues = True
        else:
            block = paragraph_from_text(tail)
            block.id = registry.claim("", block.type)
            blocks.append(block)
    log.debug(
        "Chunk %d (lines %d-%d): %d blocks, continues=%s.",
        chunk.index,
        chunk.startLine,
        chunk.endLine,
        len(blocks),
        continues,
    )
    return ChunkResult(index=chunk.index, blocks=blocks, lastBlockContinues=continues)


def parse_chunk_with_llm(
    client, chunk: ChunkInfo, registry: IdRegistry, has_next: bool = False, cancel_check=None
) -> ChunkResult:
    """
    Converts one chunk through the completion service and the markup parser.
    Raises:
        LLMError: When the completion call fails.
    """
    reply = _ask(
        client,
        "PARSE_CHUNK",
        cancel_check,
        context=chunk.carry or "(none)",
        text=chunk.own_text,
    )
    blocks = MarkupParser(registry).parse(reply)
    last = blocks[-1] if blocks else None
    continues = (
        has_next
        and isinstance(last, ParagraphBlock)
        and not ends_with_sentence_punct(plain_text(last.content.en).rstrip())
    )
    log_llm.debug("Chunk %d: %d blocks from markup.", chunk.index, len(blocks))
    return ChunkResult(index=chunk.index, blocks=blocks, lastBlockContinues=bool(continues))


# --- Structure ---
def _structure_excerpt(text: str) -> tuple[str, int]:
    """Returns the text sent for structure analysis and the offset of its tail part."""
    if len(text) <= STRUCTURE_HEAD_CHARS + STRUCTURE_TAIL_CHARS:
        return text, -1
    head = text[:STRUCTURE_HEAD_CHARS]
    excerpt = head + STRUCTURE_GAP + text[-STRUCTURE_TAIL_CHARS:]
    return excerpt, len(head) + len(STRUCTURE_GAP)


def identify_structure(client, text: str, cancel_check=None) -> dict:
    """
    Asks for the character offsets of the main parts of the paper. Offsets in
    the tail excerpt are mapped back to the full text; unknown parts are -1.
    Raises:
        LLMError: When the call fails or the reply holds no usable JSON.
    """
    excerpt, tail_at = _structure_excerpt(text)
    reply = _ask(client, "IDENTIFY_STRUCTURE", cancel_check, text=excerpt)
    parsed = extract_json_from_llm_response(reply)
    if not isinstance(parsed, dict):
        raise LLMError("Structure reply holds no JSON object.")

    result = {}
    for key in STRUCTURE_KEYS:
        try:
            offset = int(parsed.get(key, -1))
        except (TypeError, ValueError):
            offset = -1
        if tail_at >= 0 and offset >= tail_at:
            offset = offset - tail_at + len(text) - STRUCTURE_TAIL_CHARS
        result[key] = offset if 0 <= offset <= len(text) else -1
    log_llm.debug("Structure offsets: %s", result)
    return result


def offset_to_line(text: str, offset: int) -> int:
    """Maps a character offset to its 0-based line number; -1 stays -1."""
    if offset < 0:
        return -1
    return text.count("\n", 0, offset)


def find_references_line(lines, start: int = 0) -> int:
    """Returns the position of the last References heading at or after `start`, or -1."""
    for pos in range(len(lines) - 1, start - 1, -1):
        if REFERENCES_HEADING_RE.match(lines[pos].text):
            return pos
    return -1


# --- Abstract / keywords ---
def extract_abstract_and_keywords(client, text: str, cancel_check=None):
    """Returns (LocalizedText abstract, keywords); empty values on failure."""
    try:
        reply = _ask(client, "EXTRACT_ABSTRACT", cancel_check, text=text)
    except LLMError as e:
        log_llm.warning("Abstract extraction failed: %s", e)
        return LocalizedText(), []
    parsed = extract_json_from_llm_response(reply)
    if not isinstance(parsed, dict):
        return LocalizedText(), []
    abstract = parsed.get("abstract") or {}
    if isinstance(abstract, str):
        abstract = {"en": abstract}
    keywords = [str(k).strip() for k in parsed.get("keywords") or [] if str(k).strip()]
    return LocalizedText(en=abstract.get("en") or "", zh=abstract.get("zh") or ""), keywords


# --- References ---
def extract_references_with_llm(client, text: str, registry: IdRegistry, cancel_check=None):
    """Parses a bibliography through the completion service; [] on failure."""
    try:
        reply = _ask(client, "EXTRACT_REFERENCES", cancel_check, text=text)
    except LLMError as e:
        log_llm.warning("Reference extraction failed: %s", e)
        return []
    parsed = extract_json_from_llm_response(reply)
    if isinstance(parsed, dict):
        parsed = parsed.get("references")
    if not isinstance(parsed, list):
        log_llm.warning("Unusable reference reply: %s", format_text_for_log(reply))
        return []
    entries = [r for r in parsed if isinstance(r, dict) and r.get("title")]
    return normalize_references(entries, registry)


# --- Optional passes ---
def fix_inline_math(client, sections, cancel_check=None) -> int:
    """Repairs inline math in paragraphs and headings. Returns the number fixed."""
    fixed = 0
    for block in iter_blocks(sections):
        content = getattr(block, "content", None)
        if not isinstance(block, (ParagraphBlock, HeadingBlock)) or content is None:
            continue
        for node in content.en:
            if not isinstance(node, InlineMathNode) or not node.latex.strip():
                continue
            try:
                reply = _ask(client, "FIX_INLINE_MATH", cancel_check, latex=node.latex)
            except LLMError as e:
                log_llm.debug("Math repair skipped for '%s': %s", node.latex, e)
                continue
            repaired = strip_math_delimiters(reply)
            if repaired and repaired != node.latex:
                log.debug("Fixed math: %s -> %s", node.latex, repaired)
                node.latex = repaired
                fixed += 1
    log.info("Fixed %d inline math expressions.", fixed)
    return fixed


def _translation_targets(document) -> list:
    """Collects (text, writer) pairs for section titles and paragraphs."""
    targets = []
    for section in iter_sections(document.sections):
        if section.title.en:
            targets.append((section.title.en, lambda zh, s=section: setattr(s.title, "zh", zh)))
        for block in section.content:
            if isinstance(block, ParagraphBlock):
                text = plain_text(block.content.en).strip()
                if text:
                    targets.append(
                        (text, lambda zh, b=block: setattr(b.content, "zh", to_inline(zh)))
                    )
    return targets


def translate_document(client, document, cancel_check=None, progress=None) -> int:
    """
    Fills the zh channel of the abstract, section titles and paragraphs.
    Texts go out in batches joined by a separator line; a failed batch leaves
    its zh channels empty. Returns the number of texts translated.
    """
    translated = 0
    if document.abstract.en and not document.abstract.zh:
        try:
            document.abstract.zh = _ask(
                client,
                "TRANSLATE",
                cancel_check,
                separator=TRANSLATION_SEPARATOR,
                text=document.abstract.en,
            ).strip()
            translated += 1
        except LLMError as e:
            log_llm.warning("Abstract translation failed: %s", e)

    targets = _translation_targets(document)
    for i in range(0, len(targets), TRANSLATION_BATCH_SIZE):
        batch = targets[i : i + TRANSLATION_BATCH_SIZE]
        joined = f"\n{TRANSLATION_SEPARATOR}\n".join(text for text, _ in batch)
        try:
            reply = _ask(
                client, "TRANSLATE", cancel_check, separator=TRANSLATION_SEPARATOR, text=joined
            )
        except LLMError as e:
            log_llm.warning("Translation batch %d failed: %s", i // TRANSLATION_BATCH_SIZE, e)
            continue
        parts = [p.strip() for p in SEPARATOR_SPLIT_RE.split(reply)]
        if len(parts) != len(batch):
            log_llm.debug("Translation batch returned %d parts for %d texts.", len(parts), len(batch))
        for (_, write), zh in zip(batch, parts):
            if zh:
                write(zh)
                translated += 1
        if progress:
            progress(min(i + len(batch), len(targets)), len(targets))
    log.info("Translated %d of %d texts.", translated, len(targets) + 1)
    return translated


def describe_error(exc: BaseException) -> str:
    """Maps an exception to a short, user-facing explanation."""
    message = str(exc) or type(exc).__name__
    if isinstance(exc, LLMError) or "API" in message or "connection" in message.lower():
        return "Communication with the completion service failed; check the network and API settings."
    if "JSON" in message or "format" in message.lower():
        return "The completion service returned malformed data."
    if "timeout" in message.lower() or "timed out" in message.lower():
        return "Parsing timed out; consider splitting the document."
    return message
