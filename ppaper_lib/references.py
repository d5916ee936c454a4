# --- ppaper_lib/references.py ---
"""
ppaper_lib/references.py: Rule-based parsing of a numbered bibliography.
"""
import logging
import re

from .ids import IdRegistry
from .models import Reference

log_refs = logging.getLogger("ppaper.refs")

ENTRY_SPLIT_RE = re.compile(r"\n(?=\s*\[?\d+\]?\.?\s+)")
NUMBER_PREFIX_RE = re.compile(r"^\[?(\d+)\]?\.?\s+")
# The author list ends at the first period that does not close an initial
AUTHORS_RE = re.compile(r"^(.+?)(?<!\b[A-Z])[.:]\s+")
AUTHOR_SPLIT_RE = re.compile(r",\s*(?:and\s+)?|\s+and\s+|\s*&\s*")
TRAILING_YEAR_RE = re.compile(r"[\s,]*\(?(?:19|20)\d{2}[a-z]?\)?$")
QUOTED_TITLE_RE = re.compile(r"[\"“”]([^\"“”]+)[\"“”]")
YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
DOI_RE = re.compile(r"(?:doi:\s*)?(10\.\d{4,9}/[\w.()/:;-]+)", re.IGNORECASE)
URL_RE = re.compile(r"https?://\S+")
PUBLICATION_RE = re.compile(r"^[,.]?\s*(?:In\s+)?([^,.\d]+?)(?:,|\.|vol|pp|\d{4})", re.IGNORECASE)
PAGES_RE = re.compile(r"(?:pp\.|pages?)\s*(\d+(?:\s*[-–]\s*\d+)?)", re.IGNORECASE)
VOLUME_RE = re.compile(r"(?:vol\.|volume)\s*(\d+)", re.IGNORECASE)
ISSUE_RE = re.compile(r"(?:no\.|number|issue)\s*(\d+)", re.IGNORECASE)
TRAILING_PUNCT = "),.;"
MIN_ENTRY_CHARS = 10


def split_entries(text: str) -> list[str]:
    """Splits a bibliography at numbered entry starts ([n] or n.)."""
    if not text or not text.strip():
        return []
    entries = []
    for raw in ENTRY_SPLIT_RE.split(text.strip()):
        entry = " ".join(raw.split())
        if len(entry) > MIN_ENTRY_CHARS:
            entries.append(entry)
    return entries


def parse_entry(entry: str, number: int) -> Reference:
    """Extracts fields from a single bibliography entry."""
    m = NUMBER_PREFIX_RE.match(entry)
    if m:
        number = int(m.group(1))
        entry = entry[m.end() :]

    names = ""
    remainder = entry
    qm = QUOTED_TITLE_RE.search(entry)
    if qm:
        names = entry[: qm.start()].strip().rstrip(",.:")
    else:
        am = AUTHORS_RE.match(entry)
        if am:
            names = am.group(1)
            remainder = entry[am.end() :]
    names = TRAILING_YEAR_RE.sub("", names)
    authors = [a.strip() for a in AUTHOR_SPLIT_RE.split(names) if a.strip()]

    if qm:
        title = qm.group(1).strip().rstrip(",.")
    else:
        remainder = re.sub(r"^\(?(?:19|20)\d{2}[a-z]?\)?[.,]?\s*", "", remainder)
        title = re.split(r"\.\s+", remainder)[0].strip().rstrip(".")
    title = title or entry[:80]

    publication = None
    after = entry.split(title, 1)[1] if title in entry else ""
    pm = PUBLICATION_RE.match(after.lstrip(",.\"“” ")) if after else None
    if pm and pm.group(1).strip():
        publication = pm.group(1).strip()

    year = YEAR_RE.search(entry)
    doi = DOI_RE.search(entry)
    url = URL_RE.search(entry)
    pages = PAGES_RE.search(entry)
    volume = VOLUME_RE.search(entry)
    issue = ISSUE_RE.search(entry)

    return Reference(
        id="",
        title=title,
        authors=authors or ["Unknown"],
        number=number,
        publication=publication,
        year=int(year.group()) if year else None,
        doi=doi.group(1).rstrip(TRAILING_PUNCT) if doi else None,
        url=url.group().rstrip(TRAILING_PUNCT) if url else None,
        pages=pages.group(1).replace(" ", "") if pages else None,
        volume=volume.group(1) if volume else None,
        issue=issue.group(1) if issue else None,
    )


def parse_references(text: str, registry: IdRegistry | None = None) -> list[Reference]:
    """
    Parses the raw text following a References heading.

    Entries get `ref-{number}` ids so that citations like [3] resolve.
    """
    registry = registry if registry is not None else IdRegistry()
    references = []
    number = 1
    for entry in split_entries(text):
        ref = parse_entry(entry, number)
        ref.id = registry.claim(f"ref-{ref.number}", "ref")
        references.append(ref)
        number = ref.number + 1
    log_refs.info("Parsed %d references heuristically.", len(references))
    return references
