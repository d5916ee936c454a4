import pytest

from ppaper_lib.markup import MarkupParser, parse_markup_document
from ppaper_lib.models import (
    CitationNode,
    CodeBlock,
    DividerBlock,
    FigureBlock,
    HeadingBlock,
    MathBlock,
    ParagraphBlock,
    QuoteBlock,
    TableBlock,
    UnorderedListBlock,
    plain_text,
)

MARKUP = """#HEADING2
EN: Related Work
ZH: 相关工作
NUMBER: 2

#PARA
EN: Prior work [1, 2] uses
a continuation line.
ZH: 以前的工作
ALIGN: center

#MATH
LATEX: $$E = mc^2$$
LABEL: eq:energy
NUMBER: 1

#FIGURE
SRC: http://example.org/a.png
ALT: Diagram
CAPTION-EN: System overview
NUMBER: 3

#TABLE
CAPTION-EN: Results
HEADERS: | Model | Score |
ROW: | A | 0.9 |
ROW: | B | 0.8 |
ALIGN: LEFT | RIGHT

#CODE python
CAPTION-EN: Example
def f(x):
    return x

#LIST-UNORDERED
ITEM-EN: first
ITEM-ZH: 第一
  ITEM-EN: nested

#QUOTE
EN: To be.
AUTHOR: Hamlet

---
"""


@pytest.fixture
def blocks():
    return MarkupParser().parse(MARKUP)


def test_block_sequence(blocks):
    assert [type(b) for b in blocks] == [
        HeadingBlock,
        ParagraphBlock,
        MathBlock,
        FigureBlock,
        TableBlock,
        CodeBlock,
        UnorderedListBlock,
        QuoteBlock,
        DividerBlock,
    ]
    ids = [b.id for b in blocks]
    assert all(ids) and len(set(ids)) == len(ids)


def test_heading_fields(blocks):
    heading = blocks[0]
    assert heading.level == 2
    assert heading.number == "2"
    assert plain_text(heading.content.zh) == "相关工作"


def test_paragraph_continuation_and_citations(blocks):
    para = blocks[1]
    assert plain_text(para.content.en) == "Prior work [1, 2] uses a continuation line."
    assert any(
        isinstance(n, CitationNode) and n.referenceIds == ["ref-1", "ref-2"] for n in para.content.en
    )
    assert para.align == "center"


def test_math_strips_delimiters(blocks):
    math = blocks[2]
    assert (math.latex, math.label, math.number) == ("E = mc^2", "eq:energy", "1")


def test_figure_and_table(blocks):
    figure, table = blocks[3], blocks[4]
    assert (figure.src, figure.alt, figure.number) == ("http://example.org/a.png", "Diagram", "3")
    assert figure.description is None
    assert table.headers == ["Model", "Score"]
    assert table.rows == [["A", "0.9"], ["B", "0.8"]]
    assert table.align == ["left", "right"]


def test_code_keeps_raw_lines(blocks):
    code = blocks[5]
    assert code.language == "python"
    assert code.code == "def f(x):\n    return x"
    assert plain_text(code.caption.en) == "Example"


@pytest.mark.parametrize("marker", ["#CODE[python]", "#CODE [python]", "#CODE python"])
def test_code_language_forms(marker):
    [block] = MarkupParser().parse(f"{marker}\nprint(1)")
    assert isinstance(block, CodeBlock)
    assert (block.language, block.code) == ("python", "print(1)")


def test_list_items_and_levels(blocks):
    items = blocks[6].items
    assert [plain_text(i.content.en) for i in items] == ["first", "nested"]
    assert plain_text(items[0].content.zh) == "第一"
    assert [i.level for i in items] == [1, 2]


def test_quote_author(blocks):
    assert blocks[7].author == "Hamlet"


def test_multiline_math_continuation():
    [math] = MarkupParser().parse("#MATH\nLATEX: a = b\n+ c")
    assert math.latex == "a = b\n+ c"


def test_unknown_markers_and_empty_blocks_are_skipped():
    text = "#SIDEBAR\nEN: ignored\n\n#PARA\nEN:\n\n#PARA\nEN: Kept."
    [block] = MarkupParser().parse(text)
    assert plain_text(block.content.en) == "Kept."


def test_garbage_never_raises():
    assert MarkupParser().parse("garbage\n#\n:::\nEN: stray") == []
    assert MarkupParser().parse("") == []


def test_references():
    text = (
        "#REF\nNUMBER: 1\nAUTHORS: A. Smith; B. Jones\nTITLE: Deep Things\n"
        "PUBLICATION: NeurIPS\nYEAR: 2020\nDOI: 10.1/abc\n\n#REF\nAUTHORS: Nobody\n"
    )
    parser = MarkupParser()
    [ref] = parser.parse_references(text)
    assert ref.authors == ["A. Smith", "B. Jones"]
    assert (ref.number, ref.year, ref.doi) == (1, 2020, "10.1/abc")
    assert ref.publication == "NeurIPS"
    assert parser.parse(text) == []


def test_parse_markup_document_builds_sections():
    document = parse_markup_document("#HEADING1\nEN: Intro\n\n#PARA\nEN: Hello.")
    [section] = document.sections
    assert section.title.en == "Intro"
    assert len(section.content) == 1
