import pytest

from ppaper_lib.models import (
    HeadingBlock,
    LocalizedContent,
    ParagraphBlock,
    TextNode,
    iter_blocks,
)
from ppaper_lib.reconstructor import PREAMBLE_SECTION_ID, SectionTreeBuilder, flatten_sections


def heading(block_id, level, title):
    return HeadingBlock(id=block_id, level=level, content=LocalizedContent(en=[TextNode(title)]))


def para(block_id, text="Text."):
    return ParagraphBlock(id=block_id, content=LocalizedContent(en=[TextNode(text)]))


@pytest.fixture
def blocks():
    return [
        heading("h-a", 1, "A"),
        para("p1"),
        heading("h-b", 2, "B"),
        para("p2"),
        heading("h-c", 1, "C"),
        para("p3"),
    ]


def test_builds_nested_sections(blocks):
    roots = SectionTreeBuilder().build(blocks)
    assert [s.title.en for s in roots] == ["A", "C"]
    assert [s.id for s in roots] == ["h-a", "h-c"]
    assert roots[0].subsections[0].title.en == "B"
    assert [b.id for b in roots[0].content] == ["p1"]
    assert [b.id for b in roots[0].subsections[0].content] == ["p2"]


def test_depth_first_order_matches_input(blocks):
    roots = SectionTreeBuilder().build(blocks)
    expected = [b.id for b in blocks if not isinstance(b, HeadingBlock)]
    assert [b.id for b in iter_blocks(roots)] == expected


def test_content_before_first_heading_goes_to_preamble():
    roots = SectionTreeBuilder().build([para("p0"), para("p00"), heading("h-a", 1, "A")])
    assert roots[0].id == PREAMBLE_SECTION_ID
    assert roots[0].title.en == ""
    assert [b.id for b in roots[0].content] == ["p0", "p00"]
    assert len(roots) == 2


def test_shallower_heading_closes_deeper_sections():
    roots = SectionTreeBuilder().build([heading("x", 2, "X"), heading("y", 1, "Y")])
    assert [s.id for s in roots] == ["x", "y"]


def test_heading_number_moves_to_section():
    h = heading("h", 1, "Intro")
    h.number = "1"
    [section] = SectionTreeBuilder().build([h])
    assert section.number == "1"


def test_flatten_and_rebuild_is_stable(blocks):
    roots = SectionTreeBuilder().build(blocks)
    rebuilt = SectionTreeBuilder().build(flatten_sections(roots))
    assert rebuilt == roots
