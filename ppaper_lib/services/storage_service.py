# --- ppaper_lib/services/storage_service.py ---
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime

from ppaper_lib.errors import StorageError
from ppaper_lib.ids import is_safe_id
from ppaper_lib.models import Metadata, ParseProgress, PaperDocument, to_dict

log = logging.getLogger("ppaper.storage")

INTERMEDIATE_STATUSES = (
    "metadata",
    "structure",
    "chunking",
    "parsing",
    "merging",
    "references",
    "images",
    "saving",
)


def map_status_to_parse_status(status: str) -> str:
    """Collapses a job status to the coarse document status stored in the database."""
    if status in INTERMEDIATE_STATUSES:
        return "parsing"
    if status in ("completed", "failed"):
        return status
    return "pending"


def _now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")


@contextmanager
def _storage_errors(action: str, doc_id: str):
    """Re-raises database and filesystem errors as StorageError."""
    try:
        yield
    except (sqlite3.Error, OSError) as e:
        log.error("Failed to %s for document %s: %s", action, doc_id, e)
        raise StorageError(f"Failed to {action} for document {doc_id}: {e}") from e


class StorageService:
    """
    Persists parse state: document records and progress in SQLite, the original
    source and the structured content as files under the data directory.
    """

    def __init__(self, data_dir: str, db_name: str = "ppaper.db"):
        """
        Args:
            data_dir (str): Root directory for the database and content files.
        """
        if not data_dir:
            raise ValueError("Data directory cannot be empty.")
        self.data_dir = data_dir
        self.db_path = os.path.join(data_dir, db_name)
        self.originals_dir = os.path.join(data_dir, "originals")
        self.content_dir = os.path.join(data_dir, "content")

    def _get_connection(self) -> sqlite3.Connection:
        """Establishes a connection to the SQLite database with a row factory."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        """
        Creates the data directories and all tables if they do not already exist.
        This method is idempotent and safe to run on every application start.
        """
        log.info("Initializing storage at %s...", self.data_dir)
        os.makedirs(self.originals_dir, exist_ok=True)
        os.makedirs(self.content_dir, exist_ok=True)
        conn = self._get_connection()
        try:
            with conn:
                self._create_documents_table(conn)
                self._create_progress_table(conn)
            log.info("Database schema checked and is up to date.")
        except sqlite3.Error as e:
            log.error("An error occurred during DB initialization: %s", e)
            raise StorageError(f"Database initialization failed: {e}") from e
        finally:
            conn.close()

    # --- Schema Creation ---
    def _create_documents_table(self, conn: sqlite3.Connection):
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                title TEXT,
                metadata_json TEXT,
                parse_status TEXT NOT NULL DEFAULT 'pending',
                error TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )

    def _create_progress_table(self, conn: sqlite3.Connection):
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS parse_progress (
                document_id TEXT PRIMARY KEY,
                progress_json TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (document_id) REFERENCES documents (id) ON DELETE CASCADE
            );
            """
        )

    # --- Paths ---
    @staticmethod
    def _file_name(doc_id: str, ext: str) -> str:
        if not is_safe_id(doc_id):
            raise StorageError(f"Invalid document id: {doc_id!r}")
        return f"{doc_id}{ext}"

    def _original_path(self, doc_id: str) -> str:
        return os.path.join(self.originals_dir, self._file_name(doc_id, ".md"))

    def _content_path(self, doc_id: str) -> str:
        return os.path.join(self.content_dir, self._file_name(doc_id, ".json"))

    @staticmethod
    def _write_file(path: str, text: str):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)

    # --- Document records ---
    def ensure_document(self, doc_id: str, title: str | None = None):
        log.debug("Ensuring document record '%s'.", doc_id)
        with _storage_errors("create record", doc_id), self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO documents (id, title) VALUES (?, ?);", (doc_id, title)
            )

    def get_document_record(self, doc_id: str) -> dict | None:
        with _storage_errors("read record", doc_id), self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?;", (doc_id,)).fetchone()
        return dict(row) if row else None

    def set_parse_status(self, doc_id: str, status: str, error: str | None = None):
        parse_status = map_status_to_parse_status(status)
        with _storage_errors("update status", doc_id), self._get_connection() as conn:
            conn.execute(
                "UPDATE documents SET parse_status = ?, error = ?, updated_at = ? WHERE id = ?;",
                (parse_status, error, _now(), doc_id),
            )

    # --- Original source ---
    def write_original_source(self, doc_id: str, text: str):
        """Stores the source verbatim so a failed parse can be retried."""
        log.debug("Saving original source for '%s' (%d chars).", doc_id, len(text))
        with _storage_errors("save original source", doc_id):
            self._write_file(self._original_path(doc_id), text)
        self.ensure_document(doc_id)

    def read_original_source(self, doc_id: str) -> str | None:
        path = self._original_path(doc_id)
        if not os.path.exists(path):
            log.debug("No original source stored for '%s'.", doc_id)
            return None
        with _storage_errors("read original source", doc_id):
            with open(path, "r", encoding="utf-8") as f:
                return f.read()

    # --- Structured content ---
    def write_document(self, doc_id: str, document: PaperDocument):
        log.debug("Saving structured content for '%s'.", doc_id)
        with _storage_errors("save content", doc_id):
            self._write_file(
                self._content_path(doc_id),
                json.dumps(to_dict(document), indent=2, ensure_ascii=False),
            )

    def read_document(self, doc_id: str) -> dict | None:
        path = self._content_path(doc_id)
        if not os.path.exists(path):
            return None
        with _storage_errors("read content", doc_id):
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)

    # --- Metadata ---
    def write_metadata(self, doc_id: str, metadata: Metadata):
        with _storage_errors("save metadata", doc_id), self._get_connection() as conn:
            conn.execute(
                "UPDATE documents SET title = ?, metadata_json = ?, updated_at = ? WHERE id = ?;",
                (
                    metadata.title,
                    json.dumps(to_dict(metadata), ensure_ascii=False),
                    _now(),
                    doc_id,
                ),
            )

    def read_metadata(self, doc_id: str) -> dict | None:
        record = self.get_document_record(doc_id)
        if not record or not record.get("metadata_json"):
            return None
        return json.loads(record["metadata_json"])

    # --- Progress ---
    def write_progress(self, doc_id: str, progress: ParseProgress):
        """Stores the latest progress snapshot and the mapped document status."""
        payload = json.dumps(progress.to_dict(), ensure_ascii=False)
        now = _now()
        with _storage_errors("save progress", doc_id), self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO parse_progress (document_id, progress_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                    progress_json = excluded.progress_json,
                    updated_at = excluded.updated_at;
                """,
                (doc_id, payload, now),
            )
            conn.execute(
                "UPDATE documents SET parse_status = ?, updated_at = ? WHERE id = ?;",
                (map_status_to_parse_status(progress.status), now, doc_id),
            )

    def read_progress(self, doc_id: str) -> ParseProgress | None:
        with _storage_errors("read progress", doc_id), self._get_connection() as conn:
            row = conn.execute(
                "SELECT progress_json FROM parse_progress WHERE document_id = ?;", (doc_id,)
            ).fetchone()
        return ParseProgress.from_dict(json.loads(row["progress_json"])) if row else None

    # --- Failures ---
    def write_failure(self, doc_id: str, message: str, details: str | None = None):
        """Marks the document failed and records the error message and raw detail."""
        error = json.dumps({"message": message, "details": details, "at": _now()})
        log.debug("Recording failure for '%s': %s", doc_id, message)
        self.set_parse_status(doc_id, "failed", error)

    def read_failure(self, doc_id: str) -> dict | None:
        record = self.get_document_record(doc_id)
        if not record or not record.get("error"):
            return None
        return json.loads(record["error"])
