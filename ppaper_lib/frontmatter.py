# --- ppaper_lib/frontmatter.py ---
"""
ppaper_lib/frontmatter.py: Title, author, venue, abstract and keyword extraction
from the opening lines of a paper.

The front matter is read as a sequence of merged classification units. Each
unit is classified either heuristically or by the completion service, and the
classification drives a small state machine that fills a Metadata record.
"""
import logging
import re
from dataclasses import dataclass, field

from core.llm_utils import LLMError, extract_json_from_llm_response
from .constants import FRONT_MATTER_TYPES, PROMPT_REGISTRY
from .detectors import MD_HEADING_RE, REFERENCES_HEADING_RE, match_heading
from .models import Author, LocalizedText, Metadata
from .scanner import LineScanner, MergedLines, ends_with_sentence_punct, is_blank

log_meta = logging.getLogger("ppaper.meta")

CJK_RE = re.compile(r"[一-龥]")
LATIN_RE = re.compile(r"[A-Za-z]")
EMAIL_RE = re.compile(r"[\w.+-]+@[\w.-]+\.\w+")
DOI_RE = re.compile(r"10\.\d{4,9}/[\w.()/:;-]+", re.IGNORECASE)
YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
PERSON_RE = re.compile(r"^[A-Z][a-z]+(?:[\s-]+(?:[A-Z]\.|[A-Z][a-z]+))*\s*[*†‡\d,]*$")
MULTI_PERSON_RE = re.compile(r"^(?:[A-Z][a-z]+(?:\s+[A-Z][a-z.]+)+\s*[*†‡\d]*\s*(?:,|and)\s*)+[A-Z][a-z]+(?:\s+[A-Z][a-z.]+)+\s*[*†‡\d]*$")
AFFILIATION_RE = re.compile(
    r"University|Institute|College|Laboratory|Department|Academy|School|Center|Centre",
    re.IGNORECASE,
)
PLACE_RE = re.compile(r"^[A-Z][a-z]+,\s+[A-Z][a-z]+")
VENUE_RE = re.compile(
    r"^(KDD|ICML|NeurIPS|CVPR|ICCV|ECCV|ICLR|AAAI|IJCAI|ACL|EMNLP|SIGIR|WWW)\s+['’]?\d{2}"
    r"|Proceedings|Conference|Journal|Transactions|Symposium|Workshop",
    re.IGNORECASE,
)
DATE_RE = re.compile(
    r"^(?:(?:January|February|March|April|May|June|July|August|September|October|November"
    r"|December|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)\.?\s+(?:\d{1,2},?\s+)?"
    r"(?:19|20)\d{2}|(?:19|20)\d{2}-\d{2}(?:-\d{2})?)$",
    re.IGNORECASE,
)
ABSTRACT_RE = re.compile(r"^(?:#{1,6}\s*)?abstract\b[\s:.\-—–]*(.*)$", re.IGNORECASE)
KEYWORDS_RE = re.compile(
    r"^(?:#{1,6}\s*)?(?:keywords?|key words|index terms)\b[\s:.\-—–]*(.*)$", re.IGNORECASE
)
CCS_RE = re.compile(r"^(?:#{1,6}\s*)?ccs concepts", re.IGNORECASE)
ACMREF_RE = re.compile(r"^(?:#{1,6}\s*)?acm reference format", re.IGNORECASE)
METADATA_RE = re.compile(
    r"\bdoi\b|https?://doi\.org|copyright|permission to make|arxiv:|©|licen[cs]e",
    re.IGNORECASE,
)
MAIN_HEADING_RE = re.compile(r"Introduction|Related Work|Background|Method", re.IGNORECASE)
KEYWORD_SPLIT_RE = re.compile(r"[,;，；·•]")

CONFERENCE_TERMS = re.compile(
    r"conference|proceedings|symposium|workshop|\b(acm|ieee|cvpr|iccv|neurips|icml|iclr|aaai|ijcai|kdd)\b"
)


def detect_language(text: str) -> str:
    """Returns 'zh', 'mixed' or 'en' from the share of CJK among letters."""
    if not text or not text.strip():
        return "en"
    cjk = len(CJK_RE.findall(text))
    latin = len(LATIN_RE.findall(text))
    if cjk + latin == 0:
        return "en"
    ratio = cjk / (cjk + latin)
    if ratio > 0.7:
        return "zh"
    if ratio > 0.3:
        return "mixed"
    return "en"


def infer_year(publication_date: str | None, journal: str | None) -> int | None:
    for source in (publication_date, journal):
        m = YEAR_RE.search(source or "")
        if m:
            return int(m.group(1))
    return None


def infer_article_type(journal: str | None) -> str:
    """Guesses the article type from the venue string; defaults to 'journal'."""
    venue = (journal or "").lower()
    if not venue:
        return "journal"
    if CONFERENCE_TERMS.search(venue):
        return "conference"
    if "arxiv" in venue or "preprint" in venue:
        return "preprint"
    if "thesis" in venue or "dissertation" in venue:
        return "thesis"
    if "book" in venue:
        return "book"
    return "journal"


def split_keywords(text: str) -> list[str]:
    m = KEYWORDS_RE.match(text.strip())
    body = m.group(1) if m else text
    return [k.strip().rstrip(".") for k in KEYWORD_SPLIT_RE.split(body) if k.strip()]


# --- Classification ---
def classify_heuristic(text: str, state: "FrontMatterState") -> dict:
    """Rule-based classification of one front-matter unit."""
    first_line = text.strip().split("\n")[0].strip()
    flat = " ".join(text.split())

    def result(kind, confidence=0.6):
        return {"type": kind, "confidence": confidence, "reasoning": "heuristic"}

    if REFERENCES_HEADING_RE.match(first_line):
        return result("references-heading", 0.95)
    if ABSTRACT_RE.match(first_line):
        return result("abstract-heading", 0.9)
    if KEYWORDS_RE.match(first_line):
        return result("keywords-heading", 0.9)
    if CCS_RE.match(first_line):
        return result("ccs-heading", 0.9)
    if ACMREF_RE.match(first_line):
        return result("acmref-heading", 0.9)

    md = MD_HEADING_RE.match(first_line)
    if md:
        if not state.title and len(md.group(1)) == 1:
            return result("title", 0.8)
        return result("heading", 0.8)
    if METADATA_RE.search(flat) or DOI_RE.search(flat):
        return result("metadata", 0.7)
    emails = EMAIL_RE.findall(flat)
    if emails and len(EMAIL_RE.sub("", flat).strip(" ,;{}()")) < 8:
        return result("email", 0.85)
    if "\n" in text.strip() and (emails or AFFILIATION_RE.search(text)):
        return result("author", 0.7)
    if AFFILIATION_RE.search(flat) and not ends_with_sentence_punct(flat):
        return result("affiliation", 0.7)
    if DATE_RE.match(flat):
        return result("date", 0.8)
    if VENUE_RE.search(flat) and len(flat.split()) <= 20:
        return result("journal", 0.6)
    if len(flat.split()) <= 6 and MAIN_HEADING_RE.search(flat) and not flat.endswith("."):
        return result("heading", 0.7)
    if state.title and (PERSON_RE.match(flat) or MULTI_PERSON_RE.match(flat)):
        return result("author", 0.6)
    if state.in_keywords and KEYWORD_SPLIT_RE.search(flat) and not ends_with_sentence_punct(flat):
        return result("keywords-content", 0.7)
    if match_heading(first_line):
        if state.title or MAIN_HEADING_RE.search(first_line):
            return result("heading", 0.6)
    if not state.title and len(flat.split()) <= 25 and not ends_with_sentence_punct(flat):
        return result("title", 0.6)
    if len(flat) < 4 or flat.isdigit():
        return result("ignore", 0.6)
    if ends_with_sentence_punct(flat) or len(flat.split()) > 12:
        return result("paragraph", 0.6)
    return result("other", 0.3)


class LLMClassifier:
    """Classifies a unit through the completion service, falling back to rules."""

    def __init__(self, client, cancel_check=None):
        self.client = client
        self.cancel_check = cancel_check

    def __call__(self, text: str, state: "FrontMatterState") -> dict:
        prompt = PROMPT_REGISTRY["CLASSIFY_FRONT_MATTER"]
        if self.cancel_check:
            self.cancel_check()
        try:
            reply = self.client.complete(
                prompt["system"],
                prompt["user"].format(
                    context=state.context or "<Document Start - Front Matter>", text=text
                ),
                max_tokens=prompt["max_tokens"],
            )
        except LLMError as e:
            log_meta.warning("Front-matter classification failed, using heuristics: %s", e)
            return classify_heuristic(text, state)

        parsed = extract_json_from_llm_response(reply)
        if isinstance(parsed, dict) and parsed.get("type") in FRONT_MATTER_TYPES:
            return parsed
        log_meta.debug("Unusable classification reply, using heuristics.")
        return classify_heuristic(text, state)


# --- Extraction ---
@dataclass
class FrontMatterState:
    title: str = ""
    authors: list = field(default_factory=list)
    journal: str = ""
    publication_date: str = ""
    doi: str = ""
    abstract: list = field(default_factory=list)
    keywords: list = field(default_factory=list)
    pending_affiliations: list = field(default_factory=list)
    pending_emails: list = field(default_factory=list)
    in_abstract: bool = False
    in_keywords: bool = False
    in_boilerplate: bool = False
    context: str = ""


@dataclass
class FrontMatter:
    metadata: Metadata
    abstract: LocalizedText
    keywords: list
    body_start: int
    language: str = "en"


def _collect_author_block(scanner: LineScanner, max_lines: int = 15) -> MergedLines | None:
    """Joins consecutive name/affiliation/email lines with newlines."""
    texts, start, end = [], None, None
    offset = 0
    blank_run = 0
    while len(texts) < max_lines:
        line = scanner.peek(offset)
        if line is None:
            break
        text = line.text.strip()
        if is_blank(text):
            blank_run += 1
            if blank_run >= 2:
                break
            offset += 1
            continue
        blank_run = 0
        if ABSTRACT_RE.match(text) or KEYWORDS_RE.match(text) or MAIN_HEADING_RE.match(text):
            break
        looks_like_author = (
            PERSON_RE.match(text)
            or MULTI_PERSON_RE.match(text)
            or AFFILIATION_RE.search(text)
            or "@" in text
            or PLACE_RE.match(text)
        )
        if not looks_like_author and texts:
            break
        texts.append(text)
        start = line.index if start is None else start
        end = line.index
        offset += 1
    if not texts:
        return None
    return MergedLines("\n".join(texts), start, end)


def _is_author_block_start(scanner: LineScanner, offset: int = 0) -> bool:
    current, ahead = scanner.peek(offset), scanner.peek(offset + 1)
    if not current or not ahead or is_blank(current.text):
        return False
    text = current.text.strip()
    return bool(
        (PERSON_RE.match(text) or MULTI_PERSON_RE.match(text))
        and (AFFILIATION_RE.search(ahead.text) or "@" in ahead.text)
    )


def _is_heading_line(text: str) -> bool:
    text = text.strip()
    if match_heading(text) or REFERENCES_HEADING_RE.match(text):
        return True
    return len(text.split()) <= 6 and bool(MAIN_HEADING_RE.search(text)) and not text.endswith(".")


def apply_author_block(text: str, state: FrontMatterState):
    """Splits an author block into Author records with affiliations and emails."""
    current = None
    for line in (l.strip() for l in text.split("\n")):
        if not line:
            continue
        email = EMAIL_RE.search(line)
        if email:
            for address in EMAIL_RE.findall(line):
                if current and not current.email:
                    current.email = address
                else:
                    state.pending_emails.append(address)
            continue
        if AFFILIATION_RE.search(line) or (PLACE_RE.match(line) and current):
            if current:
                current.affiliation = (
                    f"{current.affiliation}, {line}" if current.affiliation else line
                )
            else:
                state.pending_affiliations.append(line)
            continue
        names = re.split(r",\s*|\s+and\s+", line) if "," in line or " and " in line else [line]
        for name in names:
            name = re.sub(r"[*†‡\d]+$", "", name).strip()
            if name:
                current = Author(name=name)
                state.authors.append(current)
                log_meta.debug("Author: %s", name)


def _assign_pending(state: FrontMatterState):
    for author, affiliation in zip(state.authors, state.pending_affiliations):
        if not author.affiliation:
            author.affiliation = affiliation
    for author, email in zip(state.authors, state.pending_emails):
        if not author.email:
            author.email = email


def extract_front_matter(
    source,
    classifier=None,
    max_units: int = 80,
    min_tokens: int = 15,
    progress=None,
) -> FrontMatter:
    """
    Reads front matter from the start of a document.

    Stops at the first main heading (Introduction, Related Work, Background,
    Method), at the references heading, at the first body paragraph once the
    abstract is complete, or after `max_units` classification units.
    Args:
        source: Raw text or a LineScanner positioned at the document start.
        classifier: Callable (text, state) -> {type, confidence, reasoning}.
            Defaults to the heuristic classifier.
        progress: Optional callable (lines_done, lines_total).
    """
    scanner = source if isinstance(source, LineScanner) else LineScanner(source)
    classify = classifier or classify_heuristic
    state = FrontMatterState()
    units = 0
    # Start of consumed units that turned out not to be front matter
    body_from = None

    while not scanner.eof() and units < max_units:
        line = scanner.peek()
        if is_blank(line.text):
            scanner.next()
            continue
        units += 1
        unit_start = scanner.index
        if progress and units % 10 == 0:
            progress(scanner.index, scanner.total)

        if _is_author_block_start(scanner):
            merged = _collect_author_block(scanner)
            log_meta.debug("Merged author block (%d lines).", merged.line_count)
            apply_author_block(merged.text, state)
            scanner.consume_merged(merged)
            body_from = None
            continue

        if _is_author_block_start(scanner, 1) or _is_heading_line(line.text):
            # Keep headings and title lines from swallowing what follows them
            merged = MergedLines(line.text.strip(), line.index, line.index)
        else:
            merged = scanner.merge_ahead(min_tokens)
        if merged is None:
            break
        text = merged.text

        kw = KEYWORDS_RE.match(text)
        if kw:
            scanner.consume_merged(merged)
            body_from = None
            state.in_keywords, state.in_abstract, state.in_boilerplate = True, False, False
            if kw.group(1):
                state.keywords.extend(split_keywords(text))
            continue
        if MD_HEADING_RE.match(text) and MAIN_HEADING_RE.search(text):
            log_meta.debug("Main content heading found at line %d.", merged.start)
            break

        verdict = classify(text, state)
        kind = verdict.get("type", "other")
        log_meta.debug(
            "Unit %d-%d classified as %s (conf: %s): %.60s",
            merged.start,
            merged.end,
            kind,
            verdict.get("confidence", "N/A"),
            text,
        )

        if kind == "references-heading":
            break
        if kind == "heading":
            if MAIN_HEADING_RE.search(text) or state.abstract:
                break
            state.context = text.lstrip("# ").strip()
            scanner.consume_merged(merged)
            body_from = None
            continue
        stray = kind in ("paragraph", "other") and not (
            state.in_abstract or state.in_keywords or state.in_boilerplate
        )
        if stray and kind == "paragraph":
            if state.abstract or (state.title and len(text.split()) > 40):
                break

        scanner.consume_merged(merged)
        # Stray units only stay in the front matter if real front matter follows them
        if not stray:
            body_from = None
        elif body_from is None:
            body_from = unit_start

        if kind == "title":
            if not state.title:
                state.title = text.lstrip("#").strip()
                log_meta.info("Title: %.60s", state.title)
            else:
                log_meta.debug("Second title candidate ignored: %.60s", text)
        elif kind == "author":
            apply_author_block(text, state)
        elif kind == "affiliation":
            if state.authors:
                last = state.authors[-1]
                last.affiliation = f"{last.affiliation}, {text}" if last.affiliation else text
            else:
                state.pending_affiliations.append(text)
        elif kind == "email":
            for address in EMAIL_RE.findall(text):
                if state.authors and not state.authors[-1].email:
                    state.authors[-1].email = address
                else:
                    state.pending_emails.append(address)
        elif kind == "journal":
            state.journal = text.strip()
        elif kind == "date":
            state.publication_date = text.strip()
        elif kind == "metadata":
            m = DOI_RE.search(text)
            if m and not state.doi:
                state.doi = m.group(0).rstrip(".,;)")
        elif kind in ("ccs-heading", "acmref-heading"):
            state.in_boilerplate, state.in_abstract, state.in_keywords = True, False, False
        elif kind == "abstract-heading":
            state.in_abstract, state.in_keywords, state.in_boilerplate = True, False, False
            inline = ABSTRACT_RE.match(text.strip())
            if inline and inline.group(1):
                state.abstract.append(inline.group(1).strip())
        elif kind == "keywords-heading":
            state.in_keywords, state.in_abstract, state.in_boilerplate = True, False, False
        elif kind == "keywords-content":
            state.keywords.extend(split_keywords(text))
        elif kind == "paragraph":
            if state.in_abstract:
                state.abstract.append(text.strip())
            elif state.in_keywords:
                state.keywords.extend(split_keywords(text))

    _assign_pending(state)
    body_start = body_from if body_from is not None else scanner.index
    abstract_en = "\n".join(state.abstract)
    metadata = Metadata(
        title=state.title or "Untitled",
        authors=state.authors,
        journal=state.journal or None,
        publicationDate=state.publication_date or None,
        doi=state.doi or None,
        year=infer_year(state.publication_date, state.journal),
        articleType=infer_article_type(state.journal),
    )
    log_meta.info(
        "Front matter: title=%s, authors=%d, keywords=%d, abstract=%d chars, body at line %d.",
        bool(state.title),
        len(state.authors),
        len(state.keywords),
        len(abstract_en),
        body_start,
    )
    return FrontMatter(
        metadata=metadata,
        abstract=LocalizedText(en=abstract_en),
        keywords=_dedupe(state.keywords),
        body_start=body_start,
        language=detect_language(scanner_text(scanner)),
    )


def _dedupe(items):
    seen, result = set(), []
    for item in items:
        if item.lower() not in seen:
            seen.add(item.lower())
            result.append(item)
    return result


def scanner_text(scanner: LineScanner) -> str:
    return "\n".join(line.text for line in scanner.lines)
