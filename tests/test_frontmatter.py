import pytest

from core.llm_utils import LLMError
from ppaper_lib.frontmatter import (
    FrontMatterState,
    LLMClassifier,
    apply_author_block,
    classify_heuristic,
    detect_language,
    extract_front_matter,
    infer_article_type,
    infer_year,
    split_keywords,
)

PAPER = """# Attention Is Everything

Jane Smith
Stanford University
jane@stanford.edu

Abstract

We propose a model. It works well.

Keywords: attention, transformers; models

# 1 Introduction

Body text here.
"""


class FakeClient:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = 0

    def complete(self, system_prompt, user_prompt, max_tokens=None, temperature=None):
        self.calls += 1
        if self.error:
            raise self.error
        return self.reply


def test_extract_front_matter():
    front = extract_front_matter(PAPER)
    assert front.metadata.title == "Attention Is Everything"
    [author] = front.metadata.authors
    assert author.name == "Jane Smith"
    assert author.affiliation == "Stanford University"
    assert author.email == "jane@stanford.edu"
    assert front.abstract.en == "We propose a model. It works well."
    assert front.keywords == ["attention", "transformers", "models"]
    assert front.body_start == 12
    assert front.language == "en"


@pytest.mark.parametrize(
    "text, title, body_start",
    [
        ("Plain note without headings.\n\nSecond paragraph of the note is here.\n", "Untitled", 0),
        ("# A Note\n\nFirst body paragraph. It is short.\n\nAnother one.\n", "A Note", 2),
    ],
)
def test_unclaimed_paragraphs_stay_in_the_body(text, title, body_start):
    front = extract_front_matter(text)
    assert front.metadata.title == title
    assert front.body_start == body_start


def test_progress_callback_is_optional():
    calls = []
    extract_front_matter(PAPER, progress=lambda done, total: calls.append((done, total)))
    assert all(total > 0 for _, total in calls)


@pytest.mark.parametrize(
    "text, kind",
    [
        ("References", "references-heading"),
        ("jane@example.org", "email"),
        ("March 2021", "date"),
        ("Proceedings of KDD 2021", "journal"),
        ("arXiv:2101.00001", "metadata"),
    ],
)
def test_classify_heuristic(text, kind):
    assert classify_heuristic(text, FrontMatterState(title="T"))["type"] == kind


def test_llm_classifier_uses_reply():
    client = FakeClient(reply='```json\n{"type": "title", "confidence": 0.9}\n```')
    verdict = LLMClassifier(client)("Some Title", FrontMatterState())
    assert verdict["type"] == "title"
    assert client.calls == 1


@pytest.mark.parametrize(
    "client", [FakeClient(error=LLMError("down")), FakeClient(reply='{"type": "nonsense"}')]
)
def test_llm_classifier_falls_back_to_rules(client):
    verdict = LLMClassifier(client)("References", FrontMatterState())
    assert verdict["type"] == "references-heading"


def test_detect_language():
    assert detect_language("深度学习模型") == "zh"
    assert detect_language("深度学习 ab") == "mixed"
    assert detect_language("deep learning") == "en"
    assert detect_language("") == "en"


def test_year_and_article_type():
    assert infer_year("March 2021", None) == 2021
    assert infer_year(None, "NeurIPS 2019") == 2019
    assert infer_year(None, None) is None
    assert infer_article_type("Proceedings of the ACM Conference") == "conference"
    assert infer_article_type("arXiv preprint") == "preprint"
    assert infer_article_type("PhD Thesis") == "thesis"
    assert infer_article_type(None) == "journal"


def test_split_keywords():
    assert split_keywords("Keywords: a, b; c.") == ["a", "b", "c"]


def test_apply_author_block():
    state = FrontMatterState()
    apply_author_block("Alice Wang, Bob Li\nMIT University\nbob@mit.edu", state)
    assert [a.name for a in state.authors] == ["Alice Wang", "Bob Li"]
    assert state.authors[1].affiliation == "MIT University"
    assert state.authors[1].email == "bob@mit.edu"
