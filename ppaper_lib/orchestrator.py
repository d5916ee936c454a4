# --- ppaper_lib/orchestrator.py ---
"""
ppaper_lib/orchestrator.py: Runs parse jobs through their phases and queues
them on a pool of worker threads.

A ParseJob takes one document from raw text to a persisted PaperDocument:

    metadata -> structure -> chunking -> parsing -> merging -> references
    -> images -> saving -> completed

Each phase owns a fixed slice of the progress scale. External calls degrade
to a fallback per phase; only cancellation, persistence errors and
programming errors fail the job.
"""
import logging
import os
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import replace

from core.llm_utils import LLMError
from .api import (
    describe_error,
    extract_abstract_and_keywords,
    extract_references_with_llm,
    find_references_line,
    fix_inline_math,
    identify_structure,
    offset_to_line,
    parse_chunk_locally,
    parse_chunk_with_llm,
    translate_document,
)
from .chunker import chunk_lines
from .constants import PHASE_RANGES, STATUS_MESSAGES, TERMINAL_STATUSES
from .errors import ImageFetchError, JobCancelledError, JobConflictError, PaperParseError
from .frontmatter import FrontMatter, LLMClassifier, extract_front_matter
from .ids import IdRegistry
from .merger import BlockMerger, validate_document
from .models import ChunkResult, FigureBlock, PaperDocument, ParseProgress, iter_blocks
from .references import parse_references
from .scanner import LineScanner, normalize_text, to_lines
from .services.image_service import is_remote_url

log = logging.getLogger("ppaper.job")

DEFAULT_OPTIONS = {
    "mode": "local",
    "max_chunk_tokens": 3000,
    "overlap_tokens": 200,
    "front_matter": "heuristic",
    "max_metadata_lines": 80,
    "translate": False,
    "fix_inline_math": False,
    "filter_noise": False,
    "min_merge_tokens": 15,
    "workers": 1,
}


class ParseJob:
    """
    One parse run of one document. The job owns its id registry and its
    progress snapshot; neither is shared with other runs.
    """

    def __init__(
        self,
        doc_id: str,
        text: str,
        options: dict | None = None,
        storage=None,
        client=None,
        image_service=None,
        cancel_event: threading.Event | None = None,
        on_progress=None,
    ):
        self.doc_id = doc_id
        self.text = text
        self.options = {**DEFAULT_OPTIONS, **(options or {})}
        self.storage = storage
        self.client = client
        self.image_service = image_service
        self.cancel_event = cancel_event or threading.Event()
        self.on_progress = on_progress
        self.registry = IdRegistry()
        self.progress = ParseProgress(message=STATUS_MESSAGES["pending"])
        self.document = None

    @property
    def use_llm(self) -> bool:
        return self.client is not None and self.options["mode"] == "llm"

    # --- Progress / cancellation ---
    def check_cancel(self):
        """Raises JobCancelledError once the cancellation token is set."""
        if self.cancel_event.is_set():
            raise JobCancelledError(f"Parse of '{self.doc_id}' was cancelled.")

    def _update(self, status: str, fraction: float = 0.0, **fields):
        """Moves the snapshot into `status` at `fraction` of the phase's slice."""
        start, end = PHASE_RANGES[status]
        fraction = min(1.0, max(0.0, fraction))
        percentage = int(start + fraction * (end - start))
        if status != self.progress.status:
            log.debug("[%s] Phase '%s' (%d%%).", self.doc_id, status, percentage)
        self.progress.status = status
        self.progress.percentage = max(self.progress.percentage, percentage)
        self.progress.message = STATUS_MESSAGES[status]
        for key, value in fields.items():
            setattr(self.progress, key, value)
        self._publish()

    def _publish(self):
        snapshot = replace(self.progress)
        if self.on_progress:
            self.on_progress(snapshot)
        if self.storage is not None:
            self.storage.write_progress(self.doc_id, snapshot)

    def _enter(self, status: str, **fields):
        self.check_cancel()
        self._update(status, 0.0, **fields)

    # --- Run ---
    def run(self) -> dict:
        """
        Runs all phases and returns the job statistics.
        Raises:
            JobCancelledError: When cancelled; the job is recorded as failed.
            Exception: Any fatal error, after the failure has been recorded.
        """
        started = time.monotonic()
        self.progress = ParseProgress(
            message=STATUS_MESSAGES["pending"], startTime=time.time()
        )
        log.info("[%s] Parse started (%s mode).", self.doc_id, self.options["mode"])
        try:
            text = normalize_text(self.text)
            lines = to_lines(text)
            front = self._metadata_phase(text, lines)
            body_start, body_end, refs_line = self._structure_phase(text, lines, front)
            chunks = self._chunking_phase(lines, body_start, body_end)
            results = self._parsing_phase(chunks)
            document = self._merging_phase(results, front)
            document.references = self._references_phase(lines, refs_line)
            self._images_phase(document)
            document = self._saving_phase(document)
        except JobCancelledError as e:
            log.warning("[%s] %s", self.doc_id, e)
            self._fail("cancelled", str(e))
            raise
        except Exception as e:
            log.error("[%s] Parse failed: %s", self.doc_id, e, exc_info=True)
            self._fail(describe_error(e), f"{type(e).__name__}: {e}")
            raise

        self._update("completed", 1.0, endTime=time.time())
        stats = {
            "sectionsCount": len(document.sections),
            "referencesCount": len(document.references),
            "figuresCount": sum(isinstance(b, FigureBlock) for b in iter_blocks(document.sections)),
            "duration": round(time.monotonic() - started, 3),
        }
        self.document = document
        log.info("[%s] Parse completed: %s", self.doc_id, stats)
        return stats

    def _fail(self, message: str, details: str):
        """Keeps the last percentage and records the failure."""
        self.progress.status = "failed"
        self.progress.message = STATUS_MESSAGES["failed"]
        self.progress.error = message
        self.progress.endTime = time.time()
        try:
            self._publish()
            if self.storage is not None:
                self.storage.write_failure(self.doc_id, message, details)
        except PaperParseError as e:
            log.error("[%s] Could not record failure: %s", self.doc_id, e)

    # --- Phases ---
    def _metadata_phase(self, text: str, lines) -> FrontMatter:
        self._enter("metadata")
        classifier = None
        if self.client is not None and self.options["front_matter"] == "llm":
            classifier = LLMClassifier(self.client, self.check_cancel)

        front = extract_front_matter(
            LineScanner(lines),
            classifier,
            max_units=self.options["max_metadata_lines"],
            min_tokens=self.options["min_merge_tokens"],
            progress=lambda done, total: self._update("metadata", 0.8 * done / max(1, total)),
        )
        if not front.abstract.en and self.use_llm:
            head = "\n".join(line.text for line in lines[: max(front.body_start, 1) + 40])
            abstract, keywords = extract_abstract_and_keywords(self.client, head, self.check_cancel)
            if abstract.en:
                front.abstract = abstract
                front.keywords = front.keywords or keywords
        self._update("metadata", 1.0)
        return front

    def _structure_phase(self, text: str, lines, front: FrontMatter):
        """Returns (body_start, body_end, references_line) as line positions."""
        self._enter("structure")
        body_start = front.body_start
        refs_line = find_references_line(lines, body_start)

        if self.use_llm:
            try:
                structure = identify_structure(self.client, text, self.check_cancel)
                if structure["referencesStart"] >= 0:
                    refs_line = max(body_start, offset_to_line(text, structure["referencesStart"]))
                if body_start == 0 and structure["contentStart"] >= 0:
                    body_start = offset_to_line(text, structure["contentStart"])
            except LLMError as e:
                log.warning("[%s] Structure identification failed, using headings: %s", self.doc_id, e)

        body_end = refs_line if refs_line >= body_start else len(lines)
        log.debug(
            "[%s] Body lines %d-%d, references at %d.", self.doc_id, body_start, body_end, refs_line
        )
        self._update("structure", 1.0)
        return body_start, body_end, refs_line

    def _chunking_phase(self, lines, body_start: int, body_end: int):
        self._enter("chunking")
        chunks = chunk_lines(
            lines,
            self.options["max_chunk_tokens"],
            self.options["overlap_tokens"],
            start=body_start,
            end=body_end,
        )
        self._update("chunking", 1.0, totalChunks=len(chunks), chunksProcessed=0)
        return chunks

    def _parsing_phase(self, chunks) -> list:
        self._enter("parsing")
        results = []
        total = len(chunks)
        for i, chunk in enumerate(chunks):
            self.check_cancel()
            next_carry = chunks[i + 1].carry if i + 1 < total else None
            try:
                if self.use_llm:
                    result = parse_chunk_with_llm(
                        self.client,
                        chunk,
                        self.registry,
                        has_next=next_carry is not None,
                        cancel_check=self.check_cancel,
                    )
                else:
                    result = parse_chunk_locally(chunk, self.registry, next_carry)
            except JobCancelledError:
                raise
            except (LLMError, PaperParseError) as e:
                log.warning("[%s] Chunk %d failed, skipped: %s", self.doc_id, chunk.index, e)
                result = ChunkResult(index=chunk.index, blocks=[], failed=True)
            results.append(result)
            self._update("parsing", (i + 1) / total, chunksProcessed=i + 1)
        failed = sum(1 for r in results if r.failed)
        if failed:
            log.warning("[%s] %d of %d chunks failed.", self.doc_id, failed, total)
        return results

    def _merging_phase(self, results, front: FrontMatter) -> PaperDocument:
        self._enter("merging")
        merger = BlockMerger(self.registry, filter_noise=self.options["filter_noise"])
        sections = merger.merge(results)
        document = PaperDocument(
            metadata=front.metadata,
            abstract=front.abstract,
            keywords=list(front.keywords),
            sections=sections,
        )
        self._update("merging", 0.3)

        if self.client is not None and self.options["fix_inline_math"]:
            fix_inline_math(self.client, sections, self.check_cancel)
        self._update("merging", 0.5)

        if self.client is not None and self.options["translate"] and front.language == "en":
            translate_document(
                self.client,
                document,
                self.check_cancel,
                progress=lambda done, total: self._update("merging", 0.5 + 0.5 * done / max(1, total)),
            )
        self._update("merging", 1.0)
        return document

    def _references_phase(self, lines, refs_line: int) -> list:
        self._enter("references")
        if refs_line < 0:
            log.info("[%s] No references heading found.", self.doc_id)
            self._update("references", 1.0)
            return []
        ref_text = "\n".join(line.text for line in lines[refs_line + 1 :])
        if self.use_llm:
            references = extract_references_with_llm(
                self.client, ref_text, self.registry, self.check_cancel
            )
        else:
            try:
                references = parse_references(ref_text, self.registry)
            except PaperParseError as e:
                log.warning("[%s] Reference parsing failed: %s", self.doc_id, e)
                references = []
        self._update("references", 1.0)
        return references

    def _images_phase(self, document: PaperDocument):
        figures = [
            b
            for b in iter_blocks(document.sections)
            if isinstance(b, FigureBlock) and is_remote_url(b.src)
        ]
        self._enter("images", totalImages=len(figures), imagesProcessed=0)
        if self.image_service is None:
            figures = []
        for i, figure in enumerate(figures):
            self.check_cancel()
            try:
                data = self.image_service.fetch(figure.src)
                path = self.image_service.save(self.doc_id, figure.id, data, figure.src)
                figure.src = path
                figure.uploadedFilename = os.path.basename(path)
            except (ImageFetchError, OSError) as e:
                log.warning("[%s] Keeping remote image %s: %s", self.doc_id, figure.src, e)
            self._update("images", (i + 1) / len(figures), imagesProcessed=i + 1)
        self._update("images", 1.0)

    def _saving_phase(self, document: PaperDocument) -> PaperDocument:
        self._enter("saving")
        document = validate_document(document)
        if self.storage is not None:
            self.storage.write_document(self.doc_id, document)
            self._update("saving", 0.5)
            self.storage.write_metadata(self.doc_id, document.metadata)
        self._update("saving", 1.0)
        return document


class ParseJobManager:
    """
    Queues parse jobs on a fixed pool of worker threads.

    A document has at most one queued or running job; starting or retrying it
    while active raises JobConflictError. With the default single worker,
    jobs run one at a time in submission order.
    """

    def __init__(self, storage, options: dict | None = None, client=None, image_service=None, workers=None):
        self.storage = storage
        self.options = {**DEFAULT_OPTIONS, **(options or {})}
        self.client = client
        self.image_service = image_service
        self.workers = max(1, int(workers or self.options["workers"]))
        self._lock = threading.Lock()
        self._active = {}
        self._progress = {}
        self._closed = False
        self._queue = queue.Queue()
        self._threads = []
        for n in range(self.workers):
            thread = threading.Thread(target=self._process_queue, name=f"ppaper-job-{n}", daemon=True)
            thread.start()
            self._threads.append(thread)
        log.info("Job manager started with %d worker(s).", self.workers)

    def start(self, doc_id: str, text: str) -> Future:
        """Persists the original text, then queues a parse of it."""
        future, cancel_event = self._reserve(doc_id)
        try:
            self.storage.write_original_source(doc_id, text)
        except PaperParseError:
            self._release(doc_id)
            raise
        self._enqueue(doc_id, text, future, cancel_event)
        return future

    def retry(self, doc_id: str) -> Future | None:
        """Re-runs a document from its persisted original; None if there is none."""
        text = self.storage.read_original_source(doc_id)
        if text is None:
            log.warning("Retry requested for '%s' but no original source is stored.", doc_id)
            return None
        future, cancel_event = self._reserve(doc_id)
        log.info("Retrying parse of '%s'.", doc_id)
        self._enqueue(doc_id, text, future, cancel_event)
        return future

    def get_progress(self, doc_id: str) -> ParseProgress | None:
        """Returns the latest snapshot, from memory or from storage."""
        with self._lock:
            snapshot = self._progress.get(doc_id)
        if snapshot is not None:
            return replace(snapshot)
        return self.storage.read_progress(doc_id)

    def is_active(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._active

    def cancel(self, doc_id: str) -> bool:
        """Sets the job's cancellation token. Returns False if nothing is active."""
        with self._lock:
            entry = self._active.get(doc_id)
        if entry is None:
            return False
        log.info("Cancellation requested for '%s'.", doc_id)
        entry[1].set()
        return True

    def shutdown(self, wait: bool = True, cancel_pending: bool = False):
        """Stops the workers after the queued jobs (or cancels them first)."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if cancel_pending:
                for _, cancel_event in self._active.values():
                    cancel_event.set()
        for _ in self._threads:
            self._queue.put(None)
        if wait:
            for thread in self._threads:
                thread.join()
        log.info("Job manager stopped.")

    # --- Internals ---
    def _reserve(self, doc_id: str):
        with self._lock:
            if self._closed:
                raise PaperParseError("Job manager is shut down.")
            if doc_id in self._active:
                raise JobConflictError(f"A parse of '{doc_id}' is already queued or running.")
            future, cancel_event = Future(), threading.Event()
            self._active[doc_id] = (future, cancel_event)
            self._progress[doc_id] = ParseProgress(message=STATUS_MESSAGES["pending"])
        return future, cancel_event

    def _release(self, doc_id: str):
        with self._lock:
            self._active.pop(doc_id, None)

    def _enqueue(self, doc_id, text, future, cancel_event):
        pending = ParseProgress(message=STATUS_MESSAGES["pending"])
        try:
            self.storage.write_progress(doc_id, pending)
            self.storage.set_parse_status(doc_id, "pending")
        except PaperParseError:
            self._release(doc_id)
            raise
        self._set_progress(doc_id, pending)
        self._queue.put((doc_id, text, future, cancel_event))
        log.debug("Queued parse of '%s' (%d waiting).", doc_id, self._queue.qsize())

    def _set_progress(self, doc_id: str, snapshot: ParseProgress):
        with self._lock:
            self._progress[doc_id] = snapshot

    def _process_queue(self):
        """Worker thread: runs queued jobs until the stop sentinel arrives."""
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            doc_id, text, future, cancel_event = item
            try:
                if not future.set_running_or_notify_cancel():
                    continue
                job = ParseJob(
                    doc_id,
                    text,
                    self.options,
                    storage=self.storage,
                    client=self.client,
                    image_service=self.image_service,
                    cancel_event=cancel_event,
                    on_progress=lambda snapshot, d=doc_id: self._set_progress(d, snapshot),
                )
                # Waiters must see the document as idle once the future resolves
                try:
                    stats = job.run()
                except Exception as e:
                    self._release(doc_id)
                    future.set_exception(e)
                else:
                    self._release(doc_id)
                    future.set_result(stats)
            finally:
                self._release(doc_id)
                self._queue.task_done()


def is_terminal(progress: ParseProgress | None) -> bool:
    return progress is not None and progress.status in TERMINAL_STATUSES
