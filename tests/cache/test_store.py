import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from ocr_text_layer.cache.store import MemoryPageStore, PageStore, SqlitePageStore, normalize_display_name
from ocr_text_layer.errors import CacheWriteFailure
from ocr_text_layer.models import BBox, PageOCRResult, Word


def _result(text: str = "Hello", page_number: int = 1) -> PageOCRResult:
    return PageOCRResult(
        page_number=page_number,
        language="eng",
        dpi=300,
        width=100,
        height=100,
        words=(Word(text=text, bbox=BBox(x0=0, y0=0, x1=40, y1=20), confidence=90.0),),
    )


@pytest.fixture(params=["sqlite", "memory"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[PageStore]:
    if request.param == "sqlite":
        sqlite_store = SqlitePageStore(tmp_path / "cache.db")
        yield sqlite_store
        sqlite_store.close()
    else:
        yield MemoryPageStore()


def test_normalize_display_name() -> None:
    assert normalize_display_name("  Report.PDF ") == "report.pdf"


def test_put_and_get_round_trip(store: PageStore) -> None:
    assert store.get(1, 1) is None

    assert store.put(1, 1, _result(), updated_at=10.0)
    stored = store.get(1, 1)

    assert stored is not None
    assert stored.result == _result()
    assert stored.updated_at == 10.0


def test_put_is_last_write_wins(store: PageStore) -> None:
    store.put(1, 1, _result("newer"), updated_at=20.0)

    assert not store.put(1, 1, _result("older"), updated_at=10.0)
    assert store.put(1, 1, _result("newest"), updated_at=30.0)
    assert store.get(1, 1).result.text == "newest"


def test_find_documents_orders_by_cache_footprint(store: PageStore) -> None:
    store.register_document(1, "Report.pdf", accessed_at=5.0)
    store.register_document(2, "report.pdf", accessed_at=1.0)
    store.register_document(3, "other.pdf")
    store.put(2, 1, _result(), updated_at=1.0)
    store.put(2, 2, _result(page_number=2), updated_at=2.0)
    store.put(1, 1, _result(), updated_at=3.0)

    candidates = store.find_documents_by_display_name(" REPORT.pdf")

    assert [candidate.document_id for candidate in candidates] == [2, 1]
    assert candidates[0].cached_pages == 2
    assert candidates[0].last_cache_update == 2.0
    assert candidates[1].last_accessed == 5.0


def test_register_document_keeps_last_access_when_not_given(store: PageStore) -> None:
    store.register_document(1, "a.pdf", accessed_at=7.0)
    store.register_document(1, "a.pdf")

    assert store.find_documents_by_display_name("a.pdf")[0].last_accessed == 7.0


def test_sqlite_store_ignores_unreadable_rows(tmp_path: Path) -> None:
    path = tmp_path / "cache.db"
    store = SqlitePageStore(path)
    with sqlite3.connect(path) as connection:
        connection.execute(
            "INSERT INTO ocr_cache (document_id, page_number, ocr_data, updated_at) VALUES (1, 1, '{bad', 1.0)"
        )

    assert store.get(1, 1) is None
    store.close()


def test_sqlite_store_wraps_write_errors(tmp_path: Path) -> None:
    store = SqlitePageStore(tmp_path / "cache.db")
    store.close()

    with pytest.raises(CacheWriteFailure):
        store.put(1, 1, _result(), updated_at=1.0)


def test_sqlite_store_persists_across_connections(tmp_path: Path) -> None:
    path = tmp_path / "cache.db"
    first = SqlitePageStore(path)
    first.put(4, 2, _result("kept", page_number=2), updated_at=1.0)
    first.close()

    second = SqlitePageStore(path)

    assert second.get(4, 2).result.text == "kept"
    second.close()
