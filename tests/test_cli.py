import json

import pytest

from ppaper import Application

PAPER = """# A Tiny Paper

Abstract

A tiny abstract. It is short.

# 1 Introduction

Some body text. It ends here.
"""


@pytest.fixture
def paper_file(tmp_path, monkeypatch):
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    path = tmp_path / "tiny.md"
    path.write_text(PAPER, encoding="utf-8")
    yield path


def run(tmp_path, *argv):
    args = Application.parse_arguments(["-c", str(tmp_path / "ppaper.cfg"), *argv])
    return Application(args).run()


def test_parse_arguments_defaults():
    args = Application.parse_arguments(["paper.md"])
    assert args.input_file == "paper.md"
    assert args.mode is None and args.max_tokens is None
    assert not args.serve and not args.images
    assert Application.parse_arguments(["-d"]).debug_topics == "all"


def test_parse_file_writes_json(tmp_path, paper_file):
    output = tmp_path / "out.json"
    assert run(tmp_path, str(paper_file), "-o", str(output), "--max-tokens", "50") == 0
    document = json.loads(output.read_text(encoding="utf-8"))
    assert document["metadata"]["title"] == "A Tiny Paper"
    assert document["abstract"]["en"] == "A tiny abstract. It is short."


def test_llm_mode_requires_credentials(tmp_path, paper_file):
    assert run(tmp_path, str(paper_file), "--mode", "llm") == 1


def test_input_file_is_required(tmp_path):
    assert run(tmp_path) == 1


def test_failed_parse_exits_nonzero(tmp_path, paper_file, mocker):
    mocker.patch("ppaper.ParseJob.run", side_effect=RuntimeError("boom"))
    assert run(tmp_path, str(paper_file), "-o", str(tmp_path / "x.json")) == 1
    assert not (tmp_path / "x.json").exists()


def test_default_output_uses_a_safe_document_id(tmp_path, monkeypatch):
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "my paper (v2).md"
    path.write_text(PAPER, encoding="utf-8")
    assert run(tmp_path, str(path)) == 0
    assert (tmp_path / "my-paper-v2.json").exists()
