import threading

import pytest

import ppaper_lib.orchestrator as orchestrator
from core.llm_utils import LLMError
from ppaper_lib.errors import ImageFetchError, JobCancelledError, JobConflictError, PaperParseError
from ppaper_lib.models import FigureBlock, block_text, iter_blocks
from ppaper_lib.orchestrator import ParseJob, ParseJobManager, is_terminal

PAPER = """# A Study of Things

Jane Smith
Stanford University

Abstract

We study things. They matter.

# 1 Introduction

Things are studied here. This is a body paragraph.

![Arch](http://example.org/a.png)
Figure 1: Overview.

# 2 Method

We use a method. It works.

References

[1] A. Smith. Deep learning for things. Journal of Stuff, 2020.
[2] D. Kim. Another title. Journal of Stuff, 2019.
"""

PHASES = [
    "metadata",
    "structure",
    "chunking",
    "parsing",
    "merging",
    "references",
    "images",
    "saving",
    "completed",
]


def run_job(**kwargs):
    snapshots = []
    job = ParseJob("doc", PAPER, on_progress=snapshots.append, **kwargs)
    return job, job.run(), snapshots


def test_local_job_builds_the_document(storage):
    storage.ensure_document("doc")
    job, stats, _ = run_job(storage=storage)
    assert stats["sectionsCount"] == 2
    assert stats["referencesCount"] == 2
    assert stats["figuresCount"] == 1
    assert job.document.metadata.title == "A Study of Things"
    assert job.document.abstract.en == "We study things. They matter."
    assert [s.title.en for s in job.document.sections] == ["Introduction", "Method"]
    assert storage.read_document("doc")["metadata"]["title"] == "A Study of Things"
    assert storage.read_progress("doc").status == "completed"
    assert storage.get_document_record("doc")["parse_status"] == "completed"


def test_progress_is_monotonic_and_ordered():
    _, _, snapshots = run_job()
    percentages = [s.percentage for s in snapshots]
    assert percentages == sorted(percentages)
    statuses = [s.status for s in snapshots]
    assert [p for p in PHASES if p in statuses] == PHASES
    assert statuses.index("parsing") < statuses.index("merging")
    final = snapshots[-1]
    assert (final.status, final.percentage) == ("completed", 100)
    assert final.startTime and final.endTime
    assert final.chunksProcessed == final.totalChunks


def test_failed_chunk_does_not_fail_the_job(mocker):
    real = orchestrator.parse_chunk_locally

    def flaky(chunk, registry, next_carry=None):
        if chunk.index == 0:
            raise PaperParseError("bad chunk")
        return real(chunk, registry, next_carry)

    mocker.patch("ppaper_lib.orchestrator.parse_chunk_locally", side_effect=flaky)
    job, stats, snapshots = run_job(options={"max_chunk_tokens": 20})
    assert snapshots[-1].status == "completed"
    assert snapshots[-1].totalChunks > 1
    assert stats["referencesCount"] == 2


def test_llm_mode_isolates_failed_chunks(scripted_client):
    client = scripted_client(["{}", LLMError("down"), '[{"title": "T", "authors": ["X"]}]'])
    job, stats, _ = run_job(client=client, options={"mode": "llm"})
    assert stats["sectionsCount"] == 0
    assert stats["referencesCount"] == 1
    assert job.document.references[0].id == "ref-1"


def test_llm_mode_parses_chunks_through_markup(scripted_client):
    client = scripted_client(
        ["{}", "#HEADING1\nEN: Intro\n\n#PARA\nEN: Hello world body.", "[]"]
    )
    job, stats, _ = run_job(client=client, options={"mode": "llm"})
    assert stats["sectionsCount"] == 1
    assert job.document.sections[0].title.en == "Intro"


def test_reference_extraction_failure_keeps_the_rest(scripted_client):
    client = scripted_client(
        ["{}", "#HEADING1\nEN: Intro\n\n#PARA\nEN: Hello world body.", LLMError("down")]
    )
    job, stats, snapshots = run_job(client=client, options={"mode": "llm"})
    assert job.document.references == []
    assert stats["referencesCount"] == 0
    assert [s.title.en for s in job.document.sections] == ["Intro"]
    assert job.document.metadata.title == "A Study of Things"
    assert [a.name for a in job.document.metadata.authors] == ["Jane Smith"]
    assert snapshots[-1].status == "completed"


def test_document_without_front_matter_keeps_its_body():
    job = ParseJob("doc", "Plain note without headings.\n\nSecond paragraph of the note is here.\n")
    job.run()
    assert job.progress.status == "completed"
    assert job.document.metadata.title == "Untitled"
    assert [block_text(b) for b in iter_blocks(job.document.sections)] == [
        "Plain note without headings.",
        "Second paragraph of the note is here.",
    ]


def test_fatal_error_is_recorded(storage, mocker):
    storage.ensure_document("doc")
    mocker.patch.object(orchestrator.BlockMerger, "merge", side_effect=RuntimeError("boom"))
    job = ParseJob("doc", PAPER, storage=storage)
    with pytest.raises(RuntimeError):
        job.run()
    progress = storage.read_progress("doc")
    assert (progress.status, progress.error, progress.percentage) == ("failed", "boom", 65)
    assert storage.read_failure("doc")["details"] == "RuntimeError: boom"


def test_cancel_before_start():
    event = threading.Event()
    event.set()
    job = ParseJob("doc", PAPER, cancel_event=event)
    with pytest.raises(JobCancelledError):
        job.run()
    assert (job.progress.status, job.progress.error) == ("failed", "cancelled")


def test_cancel_during_parsing():
    event = threading.Event()

    def cancel_when_parsing(snapshot):
        if snapshot.status == "parsing":
            event.set()

    job = ParseJob("doc", PAPER, cancel_event=event, on_progress=cancel_when_parsing)
    with pytest.raises(JobCancelledError):
        job.run()
    assert job.progress.status == "failed"
    assert job.progress.percentage >= 25


def test_images_are_downloaded_or_kept(mocker):
    service = mocker.Mock()
    service.fetch.return_value = b"png"
    service.save.return_value = "/data/images/doc/figure-1.png"
    job, _, snapshots = run_job(image_service=service)
    [figure] = [b for b in iter_blocks(job.document.sections) if isinstance(b, FigureBlock)]
    assert figure.src == "/data/images/doc/figure-1.png"
    assert figure.uploadedFilename == "figure-1.png"
    assert snapshots[-1].imagesProcessed == snapshots[-1].totalImages == 1

    service.fetch.side_effect = ImageFetchError("404")
    job, _, _ = run_job(image_service=service)
    [figure] = [b for b in iter_blocks(job.document.sections) if isinstance(b, FigureBlock)]
    assert figure.src == "http://example.org/a.png"


# --- Manager ---
@pytest.fixture
def manager(storage):
    jobs = ParseJobManager(storage)
    yield jobs
    jobs.shutdown(wait=True, cancel_pending=True)


@pytest.fixture
def gate(mocker):
    """Holds every job in `run` until the event is set."""
    event = threading.Event()
    mocker.patch.object(ParseJob, "run", side_effect=lambda: event.wait(10) and {})
    yield event
    event.set()


def test_manager_runs_a_job(manager, storage):
    stats = manager.start("doc", PAPER).result(timeout=30)
    assert stats["sectionsCount"] == 2
    assert is_terminal(manager.get_progress("doc"))
    assert storage.read_original_source("doc") == PAPER


def test_second_start_conflicts_while_active(manager, gate):
    future = manager.start("doc", PAPER)
    assert manager.is_active("doc")
    with pytest.raises(JobConflictError):
        manager.start("doc", PAPER)
    with pytest.raises(JobConflictError):
        manager.retry("doc")
    gate.set()
    future.result(timeout=10)


def test_queued_job_reports_pending(manager, gate):
    manager.start("first", PAPER)
    manager.start("second", PAPER)
    assert manager.get_progress("second").status == "pending"
    assert manager.cancel("second")
    assert not manager.cancel("unknown")


def test_retry_after_failure(manager, mocker):
    real = orchestrator.validate_document
    calls = []

    def flaky(document):
        calls.append(document)
        if len(calls) == 1:
            raise RuntimeError("disk on fire")
        return real(document)

    mocker.patch("ppaper_lib.orchestrator.validate_document", side_effect=flaky)
    with pytest.raises(RuntimeError):
        manager.start("doc", PAPER).result(timeout=30)
    assert not manager.is_active("doc")
    assert manager.get_progress("doc").status == "failed"
    assert manager.retry("missing") is None

    stats = manager.retry("doc").result(timeout=30)
    assert stats["sectionsCount"] == 2
    assert manager.get_progress("doc").status == "completed"


def test_retry_reruns_from_original(manager, storage):
    storage.write_original_source("doc", PAPER)
    stats = manager.retry("doc").result(timeout=30)
    assert stats["referencesCount"] == 2
    assert storage.get_document_record("doc")["parse_status"] == "completed"


def test_closed_manager_rejects_jobs(manager):
    manager.shutdown()
    with pytest.raises(PaperParseError):
        manager.start("doc", PAPER)
