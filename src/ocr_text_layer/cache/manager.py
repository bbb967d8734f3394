import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from ocr_text_layer.cache.fingerprint import Fingerprint, PersistenceFingerprint
from ocr_text_layer.cache.store import CacheKey, PageStore, StoredPage
from ocr_text_layer.errors import (
    AliasResolutionFailure,
    CacheReadFailure,
    CacheWriteFailure,
)
from ocr_text_layer.models import PageOCRResult

logger = logging.getLogger(__name__)

HitSource = Literal["memory", "persistent", "alias"]
StoreStatus = Literal["ok", "write_failed"]


@dataclass(frozen=True)
class CacheEntry:
    """Result plus the time it was produced."""

    result: PageOCRResult
    updated_at: float


@dataclass(frozen=True)
class CacheHit:
    """Cached result usable for display; `stale` unless settings match exactly."""

    result: PageOCRResult
    stale: bool
    source: HitSource
    document_id: int


@dataclass(frozen=True)
class CacheMiss:
    """No display-compatible result exists for the page."""


CACHE_MISS = CacheMiss()


class CacheManager:
    """Two-tier page result cache with alias lookup and self-healing flushes.

    The memory tier only holds entries for the active document. Entries that
    failed to reach the persistent tier stay pending and are retried by
    `flush_pending`, which the background flush thread calls on a schedule.
    The manager's lock guards in-memory bookkeeping only and is never held
    across store I/O.
    """

    def __init__(self, store: PageStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._active_document: int | None = None
        self._memory: dict[CacheKey, CacheEntry] = {}
        self._pending: dict[CacheKey, CacheEntry] = {}
        self._confirmed: dict[CacheKey, PersistenceFingerprint] = {}
        self._aliases: dict[int, int] = {}
        self._display_names: dict[int, str] = {}
        self._flush_stop = threading.Event()
        self._flush_thread: threading.Thread | None = None

    @property
    def active_document(self) -> int | None:
        with self._lock:
            return self._active_document

    def resolve_document(self, document_id: int) -> int:
        """Return the document id lookups and writes are currently bound to."""
        with self._lock:
            return self._aliases.get(document_id, document_id)

    def set_active_document(self, document_id: int | None, display_name: str | None = None) -> None:
        """Switch the memory tier to `document_id`.

        Unpersisted memory entries of the previous document move to the
        pending set so the next flush still writes them. Persistence
        confirmations are kept only for the new document and pending keys.
        """
        if document_id is not None and display_name:
            with self._lock:
                self._display_names[document_id] = display_name
            try:
                self._store.register_document(document_id, display_name, accessed_at=self._clock())
            except CacheWriteFailure as exc:
                logger.warning("Could not register document %s: %s", document_id, exc)
        with self._lock:
            if document_id == self._active_document:
                return
            for key, entry in self._memory.items():
                if self._confirmed.get(key) != PersistenceFingerprint.of(entry.result):
                    self._pending.setdefault(key, entry)
            self._memory = {}
            self._active_document = document_id
            keep = {document_id, self._aliases.get(document_id, document_id)}
            self._confirmed = {
                key: fingerprint
                for key, fingerprint in self._confirmed.items()
                if key[0] in keep or key in self._pending
            }
        logger.debug("Active document is now %s.", document_id)

    def _is_active(self, document_id: int, target: int) -> bool:
        return self._active_document is not None and self._active_document in (document_id, target)

    def _read(self, document_id: int, page_number: int) -> StoredPage | None:
        try:
            return self._store.get(document_id, page_number)
        except CacheReadFailure as exc:
            logger.warning("Cache read failed for document %s page %s: %s", document_id, page_number, exc)
            return None

    def lookup(
        self,
        document_id: int,
        page_number: int,
        desired: Fingerprint,
    ) -> CacheHit | CacheMiss:
        """Find a display-compatible cached result for the page.

        Order: memory tier of the active document, persistent tier, then other
        documents sharing the display name. An alias hit rebinds
        `document_id` to the alias for all later lookups and writes. Aliases
        are only consulted for a document with no cached pages of its own,
        and a bound document whose alias misses still reads its own pages.
        """
        target = self.resolve_document(document_id)
        key = (target, page_number)
        with self._lock:
            entry = self._memory.get(key) if self._is_active(document_id, target) else None
        if entry is not None:
            hit = self._classify(desired, entry.result, "memory", target)
            if hit is not None:
                return hit

        stored = self._read(target, page_number)
        if stored is not None:
            hit = self._classify(desired, stored.result, "persistent", target)
            if hit is not None:
                self._remember_persisted(document_id, key, stored)
                return hit

        if target == document_id:
            hit = self._match_aliases(document_id, page_number, desired)
        else:
            hit = self._lookup_own(document_id, page_number, desired)
        if hit is not None:
            return hit
        logger.debug("Cache miss for document %s page %s.", document_id, page_number)
        return CACHE_MISS

    def _classify(
        self,
        desired: Fingerprint,
        result: PageOCRResult,
        source: HitSource,
        document_id: int,
    ) -> CacheHit | None:
        compatibility = desired.compatibility(result)
        if compatibility == "incompatible":
            return None
        return CacheHit(
            result=result,
            stale=compatibility == "stale",
            source=source,
            document_id=document_id,
        )

    def _remember_persisted(self, document_id: int, key: CacheKey, stored: StoredPage) -> None:
        with self._lock:
            self._confirmed[key] = PersistenceFingerprint.of(stored.result)
            if self._is_active(document_id, key[0]) and key not in self._memory:
                self._memory[key] = CacheEntry(result=stored.result, updated_at=stored.updated_at)

    def _lookup_own(
        self,
        document_id: int,
        page_number: int,
        desired: Fingerprint,
    ) -> CacheHit | None:
        key = (document_id, page_number)
        with self._lock:
            entry = self._memory.get(key) or self._pending.get(key)
        if entry is not None:
            hit = self._classify(desired, entry.result, "memory", document_id)
            if hit is not None:
                return hit
        stored = self._read(document_id, page_number)
        if stored is None:
            return None
        return self._classify(desired, stored.result, "persistent", document_id)

    def _has_own_pages(self, document_id: int) -> bool:
        with self._lock:
            return any(key[0] == document_id for key in (*self._memory, *self._pending))

    def _match_aliases(
        self,
        document_id: int,
        page_number: int,
        desired: Fingerprint,
    ) -> CacheHit | None:
        with self._lock:
            display_name = self._display_names.get(document_id)
        if not display_name or self._has_own_pages(document_id):
            return None
        try:
            candidates = self._store.find_documents_by_display_name(display_name)
        except AliasResolutionFailure as exc:
            logger.warning("Alias lookup for %r failed; treating as unaliased: %s", display_name, exc)
            return None
        if any(candidate.document_id == document_id and candidate.cached_pages > 0 for candidate in candidates):
            return None
        candidates = [
            candidate
            for candidate in candidates
            if candidate.document_id != document_id and candidate.cached_pages > 0
        ]
        for candidate in candidates:
            stored = self._read(candidate.document_id, page_number)
            if stored is None:
                continue
            hit = self._classify(desired, stored.result, "alias", candidate.document_id)
            if hit is not None:
                self._rebind(document_id, candidate.document_id)
                self._remember_persisted(document_id, (candidate.document_id, page_number), stored)
                return hit
        if len(candidates) == 1:
            self._rebind(document_id, candidates[0].document_id)
        return None

    def _rebind(self, document_id: int, alias_id: int) -> None:
        with self._lock:
            self._aliases[document_id] = alias_id
        logger.info("Document %s rebound to alias %s.", document_id, alias_id)

    def store(self, document_id: int, page_number: int, result: PageOCRResult) -> StoreStatus:
        """Record a fresh result in both tiers; persistence failures stay pending."""
        target = self.resolve_document(document_id)
        key = (target, page_number)
        entry = CacheEntry(result=result, updated_at=self._clock())
        with self._lock:
            if self._is_active(document_id, target):
                self._memory[key] = entry
            else:
                self._pending[key] = entry
        try:
            self._store.put(target, page_number, result, updated_at=entry.updated_at)
        except CacheWriteFailure as exc:
            logger.warning("Cache write failed for document %s page %s: %s", target, page_number, exc)
            with self._lock:
                self._pending[key] = entry
                self._confirmed.pop(key, None)
            return "write_failed"
        self._mark_confirmed(key, entry)
        return "ok"

    def _mark_confirmed(self, key: CacheKey, entry: CacheEntry) -> None:
        with self._lock:
            self._confirmed[key] = PersistenceFingerprint.of(entry.result)
            if self._pending.get(key) is entry:
                del self._pending[key]

    def flush_pending(self) -> int:
        """Persist memory-only entries; returns how many were written.

        Entries whose persistence fingerprint is already confirmed for their
        key are skipped without touching the store.
        """
        with self._lock:
            candidates = dict(self._memory)
            candidates.update(self._pending)
            confirmed = dict(self._confirmed)
        flushed = 0
        for key, entry in candidates.items():
            fingerprint = PersistenceFingerprint.of(entry.result)
            if confirmed.get(key) == fingerprint:
                with self._lock:
                    if self._pending.get(key) is entry:
                        del self._pending[key]
                continue
            try:
                self._store.put(key[0], key[1], entry.result, updated_at=entry.updated_at)
            except CacheWriteFailure as exc:
                logger.warning("Flush of document %s page %s failed, will retry: %s", key[0], key[1], exc)
                continue
            self._mark_confirmed(key, entry)
            flushed += 1
        if flushed:
            logger.info("Flushed %d cached pages to the persistent tier.", flushed)
        return flushed

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def start_background_flush(self, interval: float = 30.0) -> None:
        if self._flush_thread is not None:
            return
        self._flush_stop.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            args=(interval,),
            name="ocr-cache-flush",
            daemon=True,
        )
        self._flush_thread.start()

    def stop_background_flush(self, *, timeout: float = 5.0) -> None:
        thread = self._flush_thread
        if thread is None:
            return
        self._flush_stop.set()
        thread.join(timeout=timeout)
        self._flush_thread = None
        self.flush_pending()

    def _flush_loop(self, interval: float) -> None:
        while not self._flush_stop.wait(interval):
            try:
                self.flush_pending()
            except Exception:
                logger.exception("Background cache flush failed.")
