from ocr_text_layer.cache import CacheManager, Fingerprint, MemoryPageStore, SqlitePageStore
from ocr_text_layer.models import BBox, Line, PageOCRResult, PageSegMode, Word
from ocr_text_layer.ocr import PagePipeline
from ocr_text_layer.ocr.clients import create_engine
from ocr_text_layer.ocr.orchestrator import PageJob, PageOcrOrchestrator, PageOcrRequest

__all__ = [
    "BBox",
    "CacheManager",
    "Fingerprint",
    "Line",
    "MemoryPageStore",
    "PageJob",
    "PageOCRResult",
    "PageOcrOrchestrator",
    "PageOcrRequest",
    "PagePipeline",
    "PageSegMode",
    "SqlitePageStore",
    "Word",
    "create_engine",
]
