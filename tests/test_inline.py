from ppaper_lib.inline import expand_citation_ids, parse_rich_inline, to_inline
from ppaper_lib.models import (
    CitationNode,
    EquationRefNode,
    FigureRefNode,
    InlineMathNode,
    LinkNode,
    TableRefNode,
    TextNode,
    plain_text,
)


def test_to_inline_splits_links_and_math():
    nodes = to_inline('See [docs](http://x.com "Docs") and $x^2$ here.')
    assert nodes == [
        TextNode(content="See "),
        LinkNode(url="http://x.com", children=[TextNode(content="docs")], title="Docs"),
        TextNode(content=" and "),
        InlineMathNode(latex="x^2"),
        TextNode(content=" here."),
    ]


def test_to_inline_keeps_unmatched_dollar_as_text():
    assert to_inline("costs $5 only") == [TextNode(content="costs $5 only")]
    assert to_inline("") == []
    assert to_inline(None) == []


def test_inline_math_never_keeps_dollars():
    nodes = to_inline("value $$a+b$$ end")
    math = [n for n in nodes if isinstance(n, InlineMathNode)]
    assert math and all("$" not in n.latex for n in math)


def test_expand_citation_ids():
    assert expand_citation_ids("2-4") == ["ref-2", "ref-3", "ref-4"]
    assert expand_citation_ids("1, 4") == ["ref-1", "ref-4"]
    assert expand_citation_ids("2–3") == ["ref-2", "ref-3"]
    assert expand_citation_ids("5-2") == ["ref-5", "ref-2"]


def test_parse_rich_inline_references_and_styles():
    nodes = parse_rich_inline("As shown in Fig. 2 and [1-3], **bold** text.")
    assert nodes == [
        TextNode(content="As shown in "),
        FigureRefNode(targetId="fig-2", displayText="Fig. 2"),
        TextNode(content=" and "),
        CitationNode(referenceIds=["ref-1", "ref-2", "ref-3"], displayText="[1-3]"),
        TextNode(content=", "),
        TextNode(content="bold", style="bold"),
        TextNode(content=" text."),
    ]


def test_parse_rich_inline_table_and_equation_refs():
    nodes = parse_rich_inline("Table 3 lists Equation (5).")
    assert nodes[0] == TableRefNode(targetId="table-3", displayText="Table 3")
    assert EquationRefNode(targetId="eq-5", displayText="Equation (5)") in nodes


def test_parse_rich_inline_other_styles():
    nodes = parse_rich_inline("*it* `code` ~~gone~~")
    styled = [(n.content, n.style) for n in nodes if isinstance(n, TextNode) and n.style]
    assert styled == [("it", "italic"), ("code", "code"), ("gone", "strike")]


def test_parse_rich_inline_prefers_longest_overlap():
    nodes = parse_rich_inline("[12](http://example.org)")
    assert len(nodes) == 1
    assert isinstance(nodes[0], LinkNode)


def test_plain_text_round_trips_display_text():
    text = "See Table 2 and [4] with $x$."
    assert plain_text(parse_rich_inline(text)) == text
