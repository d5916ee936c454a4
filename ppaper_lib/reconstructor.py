# --- ppaper_lib/reconstructor.py ---
"""
ppaper_lib/reconstructor.py: Builds the section tree from a flat block stream.
"""
import logging

from .ids import IdRegistry
from .inline import to_inline
from .models import HeadingBlock, LocalizedContent, LocalizedText, Section, plain_text

log_tree = logging.getLogger("ppaper.tree")

PREAMBLE_SECTION_ID = "section-preamble"


class SectionTreeBuilder:
    """
    Walks an ordered list of blocks and nests them under their headings.

    Heading blocks open sections and are not kept as content. Content that
    precedes the first heading goes to one synthetic, untitled root section.
    """

    def __init__(self, registry: IdRegistry | None = None):
        self.registry = registry if registry is not None else IdRegistry()

    def build(self, blocks) -> list[Section]:
        """Builds the root section sequence in a single pass."""
        roots, stack = [], []
        preamble = None

        for block in blocks:
            if isinstance(block, HeadingBlock):
                level = min(6, max(1, block.level))
                while len(stack) >= level:
                    stack.pop()
                section = self._section_from_heading(block)
                if stack:
                    stack[-1].subsections.append(section)
                else:
                    roots.append(section)
                stack.append(section)
                log_tree.debug(
                    "Opened section L%d '%s' (depth %d).", level, section.title.en, len(stack)
                )
                continue

            if not stack:
                if preamble is None:
                    preamble = Section(id=self.registry.claim(PREAMBLE_SECTION_ID, "section"))
                    roots.append(preamble)
                    log_tree.debug("Content before first heading; created root section.")
                stack.append(preamble)
            stack[-1].content.append(block)

        log_tree.info("Built %d root sections from %d blocks.", len(roots), len(blocks))
        return roots

    def _section_from_heading(self, heading: HeadingBlock) -> Section:
        return Section(
            id=heading.id or self.registry.allocate("section"),
            title=LocalizedText(
                en=plain_text(heading.content.en).strip(),
                zh=plain_text(heading.content.zh).strip(),
            ),
            number=heading.number,
        )


def flatten_sections(sections, level: int = 1) -> list:
    """Re-emits the heading/content block stream a section tree was built from."""
    blocks = []
    for section in sections:
        if section.title.en or section.title.zh or section.id != PREAMBLE_SECTION_ID:
            blocks.append(
                HeadingBlock(
                    id=section.id,
                    level=min(6, level),
                    content=LocalizedContent(
                        en=to_inline(section.title.en), zh=to_inline(section.title.zh)
                    ),
                    number=section.number,
                )
            )
        blocks.extend(section.content)
        blocks.extend(flatten_sections(section.subsections, level + 1))
    return blocks
