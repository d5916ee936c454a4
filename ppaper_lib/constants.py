# --- ppaper_lib/constants.py ---
"""
ppaper_lib/constants.py: System prompts for the completion service, progress
phase weights and status messages.
"""

# --- JOB PHASES ---
# Each phase owns a fixed slice [start, end) of the 0-100 progress scale.
PHASE_RANGES = {
    "pending": (0, 0),
    "metadata": (0, 20),
    "structure": (20, 22),
    "chunking": (22, 25),
    "parsing": (25, 65),
    "merging": (65, 72),
    "references": (72, 85),
    "images": (85, 95),
    "saving": (95, 100),
    "completed": (100, 100),
}
TERMINAL_STATUSES = ("completed", "failed")

STATUS_MESSAGES = {
    "pending": "Preparing to parse...",
    "metadata": "Extracting paper metadata (title, authors, abstract)...",
    "structure": "Analyzing section structure...",
    "chunking": "Splitting the document into chunks...",
    "parsing": "Parsing paper content...",
    "merging": "Merging parse results...",
    "references": "Parsing references...",
    "images": "Downloading and processing images...",
    "saving": "Saving results...",
    "completed": "Parsing completed.",
    "failed": "Parsing failed.",
}

FRONT_MATTER_TYPES = (
    "title",
    "author",
    "affiliation",
    "email",
    "journal",
    "date",
    "abstract-heading",
    "keywords-heading",
    "keywords-content",
    "ccs-heading",
    "acmref-heading",
    "references-heading",
    "heading",
    "paragraph",
    "metadata",
    "ignore",
    "other",
)

TRANSLATION_SEPARATOR = "<<<SEP>>>"
TRANSLATION_BATCH_SIZE = 20
STRUCTURE_HEAD_CHARS = 8000
STRUCTURE_TAIL_CHARS = 3000


# --- PROMPT REGISTRY ---
# Structured-output prompts are English-only; `{...}` fields are filled with
# str.format before sending.
PROMPT_REGISTRY = {
    "CLASSIFY_FRONT_MATTER": {
        "system": "You are an expert academic paper structure analyzer. Return ONLY valid JSON.",
        "user": (
            "Analyze this text segment from the front matter of an academic paper and "
            "classify it.\n\n"
            "Current section context: {context}\n\n"
            'Text to classify:\n"""\n{text}\n"""\n\n'
            "Allowed types:\n"
            "- title: the paper's main title\n"
            "- author: author names, possibly with affiliations and emails in one block\n"
            "- affiliation: institution names (University, Institute, Laboratory, ...)\n"
            "- email: email addresses\n"
            "- journal: conference or journal name with venue and year\n"
            "- date: a publication date\n"
            "- abstract-heading: a standalone 'Abstract' line\n"
            "- keywords-heading: a standalone 'Keywords' line\n"
            "- keywords-content: a comma or semicolon separated list of terms\n"
            "- ccs-heading, acmref-heading: CCS Concepts / ACM Reference Format headers\n"
            "- references-heading: a standalone 'References' line\n"
            "- heading: a section title\n"
            "- paragraph: ordinary prose\n"
            "- metadata: DOI, copyright, permissions\n"
            "- ignore: page numbers, running headers, fragments\n"
            "- other: anything else\n\n"
            'Output format (JSON only):\n{{"type": "...", "confidence": 0.95, '
            '"reasoning": "brief explanation"}}'
        ),
        "max_tokens": 200,
    },
    "IDENTIFY_STRUCTURE": {
        "system": (
            "You are an expert in academic paper structure. Locate the parts of the "
            "paper and return their 0-based character offsets in the given text.\n\n"
            "1. titleEnd: end of the title/author/affiliation area.\n"
            "2. abstractStart / abstractEnd: the abstract body, without its heading.\n"
            "3. contentStart: the first main section heading (usually Introduction).\n"
            "4. referencesStart: the standalone References/Bibliography heading. This one "
            "must be accurate; everything after it is bibliography.\n\n"
            'Return JSON: {"titleEnd": n, "abstractStart": n, "abstractEnd": n, '
            '"contentStart": n, "referencesStart": n}. Use -1 for anything not found.'
        ),
        "user": "Identify the structure of this paper.\n\nPaper text:\n{text}",
        "max_tokens": 500,
    },
    "EXTRACT_ABSTRACT": {
        "system": (
            "You extract the abstract and keywords of an academic paper. Copy the "
            "abstract text after the 'Abstract' heading up to the next section, remove "
            "citation markers such as [1] or [2-5], and translate it into Chinese. "
            "Keywords are usually a comma or semicolon separated list after 'Keywords' or "
            "'Index Terms'.\n\n"
            'Return JSON: {"abstract": {"en": "...", "zh": "..."}, "keywords": ["..."]}. '
            "Use empty values when something is missing."
        ),
        "user": "Extract the abstract and keywords from this text:\n\n{text}",
        "max_tokens": 3000,
    },
    "EXTRACT_REFERENCES": {
        "system": (
            "You parse bibliography lists into structured data. For every entry extract "
            "authors (list of strings, original format), title, publication, year "
            "(number), doi, url, pages, volume, issue and its number. Use null for "
            "missing fields and keep the original numbering.\n\n"
            'Return JSON: {"references": [{"id": "ref-1", "number": 1, "authors": [], '
            '"title": "", "publication": null, "year": null, "doi": null, "url": null, '
            '"pages": null, "volume": null, "issue": null}]}'
        ),
        "user": "Extract every reference from this bibliography:\n\n{text}",
        "max_tokens": 8000,
    },
    "PARSE_CHUNK": {
        "system": (
            "You convert a fragment of an academic paper into a line-oriented markup. "
            "Emit blocks in reading order. Each block starts with a marker line followed "
            "by KEY: value lines.\n\n"
            "#HEADING1..#HEADING6 with EN:, ZH:, NUMBER:\n"
            "#PARA with EN:, ZH:, ALIGN:\n"
            "#MATH with LATEX: (further lines continue the formula), LABEL:, NUMBER:\n"
            "#FIGURE with SRC:, ALT:, CAPTION-EN:, CAPTION-ZH:, DESC-EN:, DESC-ZH:, NUMBER:\n"
            "#TABLE with CAPTION-EN:, CAPTION-ZH:, HEADERS: a|b, one ROW: a|b per row, "
            "ALIGN:, NUMBER:\n"
            "#CODE <language> with CAPTION-EN:, CAPTION-ZH:, then the raw code lines\n"
            "#LIST-ORDERED / #LIST-UNORDERED with one ITEM-EN: (and optional ITEM-ZH:) per item\n"
            "#QUOTE with EN:, ZH:, AUTHOR:\n"
            "#DIVIDER\n\n"
            "Rules: never wrap display math in $; use $...$ only for inline math; keep "
            "citations like [3] or [2-4] verbatim; do not summarize or omit text; stop at "
            "a References heading. The 'previous context' is for continuity only and must "
            "not be repeated. Output ONLY the markup."
        ),
        "user": "Previous context:\n{context}\n\nFragment to convert:\n{text}",
        "max_tokens": 6000,
    },
    "FIX_INLINE_MATH": {
        "system": "You are a LaTeX syntax expert. Output only corrected LaTeX code.",
        "user": (
            "Fix this LaTeX inline math if it has syntax errors. Return ONLY the "
            "corrected LaTeX without $ symbols. Balance braces, keep the meaning, and "
            "return it unchanged if it is already correct.\n\nInput: {latex}\n\n"
            "Output (LaTeX only):"
        ),
        "max_tokens": 100,
    },
    "TRANSLATE": {
        "system": "You are a professional Chinese translator. Output only the Chinese translation.",
        "user": (
            "Translate to Chinese. Keep math, citations, inline markdown and every "
            "{separator} line intact.\n<text>\n{text}\n</text>\nOutput ONLY the translation."
        ),
        "max_tokens": 6000,
    },
}
