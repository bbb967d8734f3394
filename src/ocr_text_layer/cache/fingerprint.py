from dataclasses import dataclass
from typing import Literal

from ocr_text_layer.models import OCR_ALGORITHM_VERSION, PageOCRResult, PageSegMode
from ocr_text_layer.text import canonical_language

Compatibility = Literal["exact", "stale", "incompatible"]


@dataclass(frozen=True)
class Fingerprint:
    """Settings that decide whether a cached result can be reused."""

    language: str
    dpi: int
    page_seg_mode: PageSegMode | None
    algorithm_version: int = OCR_ALGORITHM_VERSION

    @classmethod
    def create(
        cls,
        language: str,
        dpi: int,
        page_seg_mode: PageSegMode | None = None,
        algorithm_version: int = OCR_ALGORITHM_VERSION,
    ) -> "Fingerprint":
        return cls(
            language=canonical_language(language),
            dpi=dpi,
            page_seg_mode=page_seg_mode,
            algorithm_version=algorithm_version,
        )

    @classmethod
    def of(cls, result: PageOCRResult) -> "Fingerprint":
        return cls(
            language=result.language,
            dpi=result.dpi,
            page_seg_mode=result.page_seg_mode,
            algorithm_version=result.algorithm_version,
        )

    def exact_compatible(self, other: "Fingerprint") -> bool:
        return self == other

    def display_compatible(self, other: "Fingerprint") -> bool:
        return self.language == other.language

    def compatibility(self, result: PageOCRResult) -> Compatibility:
        cached = Fingerprint.of(result)
        if self.exact_compatible(cached):
            return "exact"
        if self.display_compatible(cached):
            return "stale"
        return "incompatible"


@dataclass(frozen=True)
class PersistenceFingerprint:
    """Cheap content tag used to skip re-persisting an unchanged result."""

    algorithm_version: int
    dpi: int
    language: str
    word_count: int
    text_length: int

    @classmethod
    def of(cls, result: PageOCRResult) -> "PersistenceFingerprint":
        return cls(
            algorithm_version=result.algorithm_version,
            dpi=result.dpi,
            language=result.language,
            word_count=len(result.words),
            text_length=len(result.text),
        )
