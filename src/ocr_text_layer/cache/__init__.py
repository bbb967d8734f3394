from ocr_text_layer.cache.fingerprint import Fingerprint, PersistenceFingerprint
from ocr_text_layer.cache.manager import CACHE_MISS, CacheHit, CacheManager, CacheMiss
from ocr_text_layer.cache.store import MemoryPageStore, PageStore, SqlitePageStore

__all__ = [
    "CACHE_MISS",
    "CacheHit",
    "CacheManager",
    "CacheMiss",
    "Fingerprint",
    "MemoryPageStore",
    "PageStore",
    "PersistenceFingerprint",
    "SqlitePageStore",
]
