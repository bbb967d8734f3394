import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from ocr_text_layer.errors import AliasResolutionFailure, CacheReadFailure, CacheWriteFailure
from ocr_text_layer.models import PageOCRResult

logger = logging.getLogger(__name__)

CacheKey = tuple[int, int]

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        document_id INTEGER PRIMARY KEY,
        display_name TEXT NOT NULL,
        normalized_name TEXT NOT NULL,
        last_accessed REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_normalized_name ON documents(normalized_name)",
    """
    CREATE TABLE IF NOT EXISTS ocr_cache (
        document_id INTEGER NOT NULL,
        page_number INTEGER NOT NULL,
        ocr_data TEXT NOT NULL,
        updated_at REAL NOT NULL,
        PRIMARY KEY (document_id, page_number)
    )
    """,
)


@dataclass(frozen=True)
class StoredPage:
    """Persisted result with the timestamp of the write that produced it."""

    result: PageOCRResult
    updated_at: float


@dataclass(frozen=True)
class DocumentCandidate:
    """Document sharing a display name, with its cache footprint."""

    document_id: int
    display_name: str
    cached_pages: int
    last_cache_update: float | None
    last_accessed: float | None = None


def normalize_display_name(name: str) -> str:
    return name.strip().lower()


def _candidate_sort_key(candidate: DocumentCandidate) -> tuple[float, float, float, int]:
    return (
        -candidate.cached_pages,
        -(candidate.last_cache_update or 0.0),
        -(candidate.last_accessed or 0.0),
        candidate.document_id,
    )


class PageStore(Protocol):
    """Persistent tier keyed by (document id, page number)."""

    def get(self, document_id: int, page_number: int) -> StoredPage | None: ...

    def put(self, document_id: int, page_number: int, result: PageOCRResult, *, updated_at: float) -> bool: ...

    def register_document(self, document_id: int, display_name: str, *, accessed_at: float | None = None) -> None: ...

    def find_documents_by_display_name(self, display_name: str) -> list[DocumentCandidate]: ...


class SqlitePageStore:
    """SQLite-backed persistent tier.

    Writes are last-write-wins on `updated_at`: an upsert carrying an older
    timestamp than the stored row is ignored, so a slow background flush can
    never clobber a fresher interactive result.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = str(path)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(self._path, check_same_thread=False)
        with self._connection:
            for statement in _SCHEMA:
                self._connection.execute(statement)

    def close(self) -> None:
        with self._lock:
            self._connection.close()

    def get(self, document_id: int, page_number: int) -> StoredPage | None:
        try:
            with self._lock:
                row = self._connection.execute(
                    "SELECT ocr_data, updated_at FROM ocr_cache WHERE document_id = ? AND page_number = ?",
                    (document_id, page_number),
                ).fetchone()
        except sqlite3.Error as exc:
            raise CacheReadFailure(f"Cannot read page {page_number} of document {document_id}: {exc}") from exc
        if row is None:
            return None
        try:
            result = PageOCRResult.model_validate_json(row[0])
        except ValidationError as exc:
            logger.warning(
                "Ignoring unreadable cache row for document %s page %s: %s",
                document_id,
                page_number,
                exc,
            )
            return None
        return StoredPage(result=result, updated_at=float(row[1]))

    def put(self, document_id: int, page_number: int, result: PageOCRResult, *, updated_at: float) -> bool:
        payload = result.model_dump_json()
        try:
            with self._lock, self._connection:
                cursor = self._connection.execute(
                    """
                    INSERT INTO ocr_cache (document_id, page_number, ocr_data, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(document_id, page_number) DO UPDATE SET
                        ocr_data = excluded.ocr_data,
                        updated_at = excluded.updated_at
                    WHERE excluded.updated_at >= ocr_cache.updated_at
                    """,
                    (document_id, page_number, payload, updated_at),
                )
        except sqlite3.Error as exc:
            raise CacheWriteFailure(f"Cannot write page {page_number} of document {document_id}: {exc}") from exc
        return cursor.rowcount > 0

    def register_document(self, document_id: int, display_name: str, *, accessed_at: float | None = None) -> None:
        try:
            with self._lock, self._connection:
                self._connection.execute(
                    """
                    INSERT INTO documents (document_id, display_name, normalized_name, last_accessed)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(document_id) DO UPDATE SET
                        display_name = excluded.display_name,
                        normalized_name = excluded.normalized_name,
                        last_accessed = COALESCE(excluded.last_accessed, documents.last_accessed)
                    """,
                    (document_id, display_name, normalize_display_name(display_name), accessed_at),
                )
        except sqlite3.Error as exc:
            raise CacheWriteFailure(f"Cannot register document {document_id}: {exc}") from exc

    def find_documents_by_display_name(self, display_name: str) -> list[DocumentCandidate]:
        try:
            with self._lock:
                rows = self._connection.execute(
                    """
                    SELECT d.document_id, d.display_name, COUNT(c.page_number), MAX(c.updated_at), d.last_accessed
                    FROM documents AS d
                    LEFT JOIN ocr_cache AS c ON c.document_id = d.document_id
                    WHERE d.normalized_name = ?
                    GROUP BY d.document_id
                    """,
                    (normalize_display_name(display_name),),
                ).fetchall()
        except sqlite3.Error as exc:
            raise AliasResolutionFailure(f"Cannot look up documents named {display_name!r}: {exc}") from exc
        candidates = [
            DocumentCandidate(
                document_id=int(row[0]),
                display_name=row[1],
                cached_pages=int(row[2]),
                last_cache_update=row[3],
                last_accessed=row[4],
            )
            for row in rows
        ]
        return sorted(candidates, key=_candidate_sort_key)


class MemoryPageStore:
    """In-process persistent tier with the same semantics as `SqlitePageStore`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pages: dict[CacheKey, StoredPage] = {}
        self._documents: dict[int, tuple[str, float | None]] = {}

    def get(self, document_id: int, page_number: int) -> StoredPage | None:
        with self._lock:
            return self._pages.get((document_id, page_number))

    def put(self, document_id: int, page_number: int, result: PageOCRResult, *, updated_at: float) -> bool:
        key = (document_id, page_number)
        with self._lock:
            existing = self._pages.get(key)
            if existing is not None and existing.updated_at > updated_at:
                return False
            self._pages[key] = StoredPage(result=result, updated_at=updated_at)
        return True

    def register_document(self, document_id: int, display_name: str, *, accessed_at: float | None = None) -> None:
        with self._lock:
            previous = self._documents.get(document_id)
            if accessed_at is None and previous is not None:
                accessed_at = previous[1]
            self._documents[document_id] = (display_name, accessed_at)

    def find_documents_by_display_name(self, display_name: str) -> list[DocumentCandidate]:
        wanted = normalize_display_name(display_name)
        with self._lock:
            candidates: list[DocumentCandidate] = []
            for document_id, (name, accessed_at) in self._documents.items():
                if normalize_display_name(name) != wanted:
                    continue
                stamps = [page.updated_at for key, page in self._pages.items() if key[0] == document_id]
                candidates.append(
                    DocumentCandidate(
                        document_id=document_id,
                        display_name=name,
                        cached_pages=len(stamps),
                        last_cache_update=max(stamps) if stamps else None,
                        last_accessed=accessed_at,
                    )
                )
        return sorted(candidates, key=_candidate_sort_key)
