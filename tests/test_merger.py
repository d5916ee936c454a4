import pytest

from ppaper_lib.ids import IdRegistry
from ppaper_lib.errors import IdExhaustedError
from ppaper_lib.merger import (
    BlockMerger,
    coerce_inline,
    is_noise_block,
    join_inline,
    normalize_references,
    validate_document,
)
from ppaper_lib.models import (
    ChunkResult,
    FigureBlock,
    HeadingBlock,
    InlineMathNode,
    LocalizedContent,
    ParagraphBlock,
    Reference,
    TextNode,
    block_text,
)
from ppaper_lib.reconstructor import flatten_sections


def para(text, block_id=""):
    return ParagraphBlock(id=block_id, content=LocalizedContent(en=[TextNode(text)]))


def heading(text, level=1, block_id=""):
    return HeadingBlock(id=block_id, level=level, content=LocalizedContent(en=[TextNode(text)]))


def test_continuation_joins_boundary_paragraphs():
    results = [
        ChunkResult(index=0, blocks=[para("Intro text."), para("The model was")], lastBlockContinues=True),
        ChunkResult(index=1, blocks=[para("trained quickly."), para("Next.")]),
    ]
    blocks = BlockMerger().merge_results(results)
    assert [block_text(b) for b in blocks] == ["Intro text.", "The model was trained quickly.", "Next."]


def test_results_are_merged_in_index_order():
    results = [ChunkResult(index=1, blocks=[para("Second.")]), ChunkResult(index=0, blocks=[para("First.")])]
    assert [block_text(b) for b in BlockMerger().merge_results(results)] == ["First.", "Second."]


def test_failed_result_does_not_continue():
    results = [
        ChunkResult(index=0, blocks=[], lastBlockContinues=True, failed=True),
        ChunkResult(index=1, blocks=[para("Standalone.")]),
    ]
    assert len(BlockMerger().merge_results(results)) == 1


def test_result_with_no_blocks_keeps_pending_join():
    results = [
        ChunkResult(index=0, blocks=[para("The model was")], lastBlockContinues=True),
        ChunkResult(index=1, blocks=[]),
        ChunkResult(index=2, blocks=[para("trained quickly.")]),
    ]
    blocks = BlockMerger().merge_results(results)
    assert [block_text(b) for b in blocks] == ["The model was trained quickly."]


def test_dict_results_are_coerced():
    results = [
        {
            "index": 0,
            "blocks": [
                {"type": "paragraph", "content": "Hello world text."},
                {"type": "mystery", "content": "dropped"},
            ],
        }
    ]
    [block] = BlockMerger().merge_results(results)
    assert isinstance(block, ParagraphBlock)
    assert block.id


def test_duplicate_ids_are_replaced():
    blocks = BlockMerger().merge_results(
        [ChunkResult(index=0, blocks=[para("One.", "p1"), para("Two.", "p1")])]
    )
    assert blocks[0].id == "p1"
    assert blocks[1].id != "p1"


def test_noise_filter():
    noisy = [
        heading("Intro"),
        para("Copyright 2020 ACM"),
        para("12"),
        para("KDD '21, August 2021"),
        para("Real content of the paper."),
        FigureBlock(id="", src="a.png"),
    ]
    kept = BlockMerger(filter_noise=True).merge_results([ChunkResult(index=0, blocks=noisy)])
    assert [b.type for b in kept] == ["heading", "paragraph", "figure"]
    assert not is_noise_block(FigureBlock(id="f"))


def test_merge_is_idempotent_on_flattened_output():
    results = [
        ChunkResult(
            index=0,
            blocks=[para("Preamble text."), heading("A"), para("Alpha."), heading("B", 2), para("Beta.")],
        )
    ]
    sections = BlockMerger().merge(results)
    again = BlockMerger().merge([ChunkResult(index=0, blocks=flatten_sections(sections))])
    assert again == sections


def test_join_inline():
    assert join_inline([TextNode("a ")], [TextNode(" b")]) == [TextNode("a b")]
    joined = join_inline([TextNode("a")], [InlineMathNode("x")])
    assert joined == [TextNode("a"), TextNode(" "), InlineMathNode("x")]
    assert coerce_inline("s") == TextNode("s")


def test_id_registry_claim_and_exhaustion(mocker):
    registry = IdRegistry()
    assert registry.claim("fig-1", "figure") == "fig-1"
    assert registry.claim("fig-1", "figure").startswith("figure-")
    assert registry.claim("", "para").startswith("para-")

    fixed = mocker.patch("ppaper_lib.ids.uuid.uuid4")
    fixed.return_value.hex = "deadbeef" * 4
    registry = IdRegistry()
    registry.MAX_SUFFIX = 2
    for _ in range(3):
        registry.allocate("x")
    with pytest.raises(IdExhaustedError):
        registry.allocate("x")


def test_normalize_references_fills_ids_and_numbers():
    refs = normalize_references([{"title": "A"}, Reference(id="ref-1", title="B")])
    assert refs[0].id == "ref-1" and refs[0].number == 1
    assert refs[1].id != "ref-1" and refs[1].number == 2


def test_validate_document_fills_defaults():
    document = validate_document(
        {
            "metadata": {"title": ""},
            "keywords": ["AI", "ai", " ML "],
            "sections": [
                {"id": "", "title": {"en": ""}, "content": [{"type": "paragraph", "content": "x"}]}
            ],
        }
    )
    assert document.metadata.title == "Untitled"
    assert document.keywords == ["AI", "ML"]
    section = document.sections[0]
    assert section.id and section.title.en == "Untitled" and section.title.zh == "无标题"
    assert section.content[0].id
