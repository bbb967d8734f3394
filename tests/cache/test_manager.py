import itertools

from ocr_text_layer.cache.fingerprint import Fingerprint
from ocr_text_layer.cache.manager import CACHE_MISS, CacheHit, CacheManager
from ocr_text_layer.cache.store import DocumentCandidate, MemoryPageStore, StoredPage
from ocr_text_layer.errors import AliasResolutionFailure, CacheReadFailure, CacheWriteFailure
from ocr_text_layer.models import BBox, PageOCRResult, PageSegMode, Word

DESIRED = Fingerprint.create("eng", 300, PageSegMode.AUTO)


def _result(page_number: int = 1, *, dpi: int = 300, language: str = "eng", text: str = "Hello") -> PageOCRResult:
    return PageOCRResult(
        page_number=page_number,
        language=language,
        dpi=dpi,
        page_seg_mode=PageSegMode.AUTO,
        width=100,
        height=100,
        words=(Word(text=text, bbox=BBox(x0=0, y0=0, x1=40, y1=20), confidence=90.0),),
    )


class FlakyStore(MemoryPageStore):
    """Memory store whose reads, writes and alias lookups can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False
        self.fail_alias = False
        self.puts = 0

    def get(self, document_id: int, page_number: int) -> StoredPage | None:
        if self.fail_reads:
            raise CacheReadFailure("database is locked")
        return super().get(document_id, page_number)

    def put(self, document_id: int, page_number: int, result: PageOCRResult, *, updated_at: float) -> bool:
        if self.fail_writes:
            raise CacheWriteFailure("disk full")
        self.puts += 1
        return super().put(document_id, page_number, result, updated_at=updated_at)

    def find_documents_by_display_name(self, display_name: str) -> list[DocumentCandidate]:
        if self.fail_alias:
            raise AliasResolutionFailure("index missing")
        return super().find_documents_by_display_name(display_name)


def _manager(store: MemoryPageStore | None = None) -> CacheManager:
    ticks = itertools.count(1)
    return CacheManager(store or FlakyStore(), clock=lambda: float(next(ticks)))


def test_lookup_prefers_memory_for_active_document() -> None:
    manager = _manager()
    manager.set_active_document(1)

    assert manager.store(1, 1, _result()) == "ok"
    hit = manager.lookup(1, 1, DESIRED)

    assert isinstance(hit, CacheHit)
    assert hit.source == "memory"
    assert not hit.stale


def test_lookup_falls_back_to_persistent_tier_and_warms_memory() -> None:
    store = FlakyStore()
    store.put(1, 1, _result(), updated_at=1.0)
    manager = _manager(store)
    manager.set_active_document(1)

    first = manager.lookup(1, 1, DESIRED)
    second = manager.lookup(1, 1, DESIRED)

    assert isinstance(first, CacheHit) and first.source == "persistent"
    assert isinstance(second, CacheHit) and second.source == "memory"


def test_lookup_classifies_stale_and_incompatible_results() -> None:
    manager = _manager()
    manager.store(1, 1, _result(dpi=150))
    manager.store(1, 2, _result(2, language="kor"))

    stale = manager.lookup(1, 1, DESIRED)

    assert isinstance(stale, CacheHit) and stale.stale
    assert manager.lookup(1, 2, DESIRED) is CACHE_MISS
    assert manager.lookup(1, 3, DESIRED) is CACHE_MISS


def test_read_failures_are_treated_as_misses() -> None:
    store = FlakyStore()
    store.put(1, 1, _result(), updated_at=1.0)
    store.fail_reads = True

    assert _manager(store).lookup(1, 1, DESIRED) is CACHE_MISS


def test_alias_hit_rebinds_document() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1, "Report.pdf")
    manager.store(1, 1, _result())

    manager.set_active_document(2, "report.pdf")
    hit = manager.lookup(2, 1, DESIRED)

    assert isinstance(hit, CacheHit)
    assert hit.source == "alias"
    assert hit.document_id == 1
    assert manager.resolve_document(2) == 1

    manager.store(2, 2, _result(2))
    assert store.get(1, 2) is not None
    assert store.get(2, 2) is None


def test_single_alias_candidate_rebinds_on_page_miss() -> None:
    manager = _manager()
    manager.set_active_document(1, "scan.pdf")
    manager.store(1, 1, _result())
    manager.set_active_document(2, "scan.pdf")

    assert manager.lookup(2, 5, DESIRED) is CACHE_MISS
    assert manager.resolve_document(2) == 1


def test_alias_lookup_failure_leaves_document_unbound() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1, "scan.pdf")
    manager.store(1, 1, _result())
    manager.set_active_document(2, "scan.pdf")
    store.fail_alias = True

    assert manager.lookup(2, 1, DESIRED) is CACHE_MISS
    assert manager.resolve_document(2) == 2


def test_write_failure_is_retried_by_flush() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1)
    store.fail_writes = True

    assert manager.store(1, 1, _result()) == "write_failed"
    assert manager.pending_count() == 1
    assert manager.flush_pending() == 0
    assert isinstance(manager.lookup(1, 1, DESIRED), CacheHit)

    store.fail_writes = False
    assert manager.flush_pending() == 1
    assert manager.pending_count() == 0
    assert store.get(1, 1) is not None


def test_flush_skips_confirmed_entries() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1)
    manager.store(1, 1, _result())

    assert manager.flush_pending() == 0
    assert store.puts == 1


def test_switching_documents_keeps_unpersisted_entries_pending() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1)
    store.fail_writes = True
    manager.store(1, 1, _result())
    manager.store(1, 2, _result(2))
    store.fail_writes = False
    manager.store(1, 3, _result(3))

    manager.set_active_document(2)

    assert manager.pending_count() == 2
    assert manager.lookup(1, 3, DESIRED) is not CACHE_MISS
    assert manager.flush_pending() == 2


def test_newer_write_is_not_clobbered_by_older_flush() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1)
    store.fail_writes = True
    manager.store(1, 1, _result(text="older"))
    store.fail_writes = False
    store.put(1, 1, _result(text="fresh"), updated_at=100.0)

    manager.flush_pending()

    assert store.get(1, 1).result.text == "fresh"


def test_stop_background_flush_runs_final_flush() -> None:
    store = FlakyStore()
    manager = _manager(store)
    store.fail_writes = True
    manager.store(1, 1, _result())
    manager.start_background_flush(interval=60.0)
    store.fail_writes = False

    manager.stop_background_flush()

    assert manager.pending_count() == 0
    assert store.get(1, 1) is not None


def test_lookup_for_same_settings_returns_stored_result() -> None:
    manager = _manager()
    manager.set_active_document(7)
    stored = _result(3)
    manager.store(7, 3, stored)

    hit = manager.lookup(7, 3, DESIRED)
    other_dpi = manager.lookup(7, 3, Fingerprint.create("eng", 150, PageSegMode.AUTO))

    assert isinstance(hit, CacheHit) and not hit.stale
    assert hit.result == stored
    assert other_dpi is CACHE_MISS or (isinstance(other_dpi, CacheHit) and other_dpi.stale)


def test_document_with_own_pages_is_not_rebound() -> None:
    manager = _manager()
    manager.set_active_document(1, "scan.pdf")
    manager.store(1, 1, _result())
    manager.set_active_document(2, "scan.pdf")
    manager.store(2, 2, _result(2))

    assert manager.lookup(2, 5, DESIRED) is CACHE_MISS
    assert manager.resolve_document(2) == 2
    hit = manager.lookup(2, 2, DESIRED)
    assert isinstance(hit, CacheHit)
    assert hit.document_id == 2


def test_persisted_own_pages_block_rebinding_for_inactive_document() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1, "scan.pdf")
    manager.store(1, 1, _result())
    store.register_document(2, "scan.pdf")
    store.put(2, 2, _result(2), updated_at=0.5)
    manager.set_active_document(2, "scan.pdf")

    assert manager.lookup(2, 1, DESIRED) is CACHE_MISS
    assert manager.resolve_document(2) == 2


def test_bound_document_still_reads_its_own_pages() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1, "scan.pdf")
    manager.store(1, 1, _result())
    manager.set_active_document(2, "scan.pdf")
    assert manager.lookup(2, 5, DESIRED) is CACHE_MISS
    assert manager.resolve_document(2) == 1

    store.put(2, 3, _result(3, text="own"), updated_at=50.0)
    hit = manager.lookup(2, 3, DESIRED)

    assert isinstance(hit, CacheHit)
    assert hit.document_id == 2
    assert hit.result.text == "own"


def test_switching_documents_drops_confirmations_of_previous_document() -> None:
    store = FlakyStore()
    manager = _manager(store)
    manager.set_active_document(1)
    manager.store(1, 1, _result())
    store.fail_writes = True
    manager.store(1, 2, _result(2))
    store.fail_writes = False

    manager.set_active_document(2)

    assert set(manager._confirmed) == set()
    assert manager.pending_count() == 1
    assert manager.flush_pending() == 1
    assert set(manager._confirmed) == {(1, 2)}
