from enum import IntEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from ocr_text_layer.text import canonical_language

if TYPE_CHECKING:
    from collections.abc import Sequence

# Bump whenever filter or recovery behavior changes; cached results built
# under another version are only ever served as stale.
OCR_ALGORITHM_VERSION = 8


class PageSegMode(IntEnum):
    """Page segmentation modes understood by the OCR engines (Tesseract values)."""

    AUTO = 3
    SINGLE_BLOCK = 6
    SINGLE_LINE = 7
    SINGLE_WORD = 8
    SPARSE_TEXT = 11


class BBox(BaseModel):
    """Axis-aligned box in image pixel space, top-left origin."""

    model_config = ConfigDict(frozen=True)

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return max(0.0, self.x1 - self.x0)

    @property
    def height(self) -> float:
        return max(0.0, self.y1 - self.y0)

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center_x(self) -> float:
        return (self.x0 + self.x1) / 2

    @property
    def center_y(self) -> float:
        return (self.y0 + self.y1) / 2

    def offset(self, dx: float, dy: float) -> "BBox":
        return BBox(x0=self.x0 + dx, y0=self.y0 + dy, x1=self.x1 + dx, y1=self.y1 + dy)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return self.x0, self.y0, self.x1, self.y1


class Word(BaseModel):
    """Single recognized token; never mutated once produced."""

    model_config = ConfigDict(frozen=True)

    text: str
    bbox: BBox
    confidence: float = Field(ge=0.0, le=100.0)

    def offset(self, dx: float, dy: float) -> "Word":
        return self.model_copy(update={"bbox": self.bbox.offset(dx, dy)})


class Line(BaseModel):
    """Words sharing a text line, with text and geometry derived from them."""

    model_config = ConfigDict(frozen=True)

    words: tuple[Word, ...]
    text: str
    confidence: float
    bbox: BBox

    @classmethod
    def from_words(cls, words: "Sequence[Word]", *, language: str) -> "Line":
        from ocr_text_layer.ocr.lines import join_words_for_language, union_bbox

        ordered = tuple(sorted(words, key=lambda word: (word.bbox.x0, word.bbox.y0)))
        return cls(
            words=ordered,
            text=join_words_for_language(ordered, language),
            confidence=sum(word.confidence for word in ordered) / len(ordered),
            bbox=union_bbox([word.bbox for word in ordered]),
        )


class DroppedWord(BaseModel):
    """Word removed by a quality filter, with the filter tag and reason."""

    model_config = ConfigDict(frozen=True)

    word: Word
    filter: str
    reason: str


class OcrDebugInfo(BaseModel):
    """Diagnostics describing what the quality filters removed."""

    model_config = ConfigDict(frozen=True)

    dropped_words: tuple[DroppedWord, ...] = ()
    drop_counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_dropped(cls, dropped: "Sequence[DroppedWord]") -> "OcrDebugInfo":
        counts: dict[str, int] = {}
        for item in dropped:
            counts[item.filter] = counts.get(item.filter, 0) + 1
        return cls(dropped_words=tuple(dropped), drop_counts=counts)


class PageOCRResult(BaseModel):
    """OCR output for one page.

    `words` is the only authored content. `lines`, `text` and `confidence` are
    computed from it on access and included when the model is serialized, so
    offline tools can read them without re-deriving line structure.
    """

    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    language: str
    dpi: int = Field(gt=0)
    page_seg_mode: PageSegMode | None = None
    algorithm_version: int = OCR_ALGORITHM_VERSION
    width: int = Field(ge=0)
    height: int = Field(ge=0)
    words: tuple[Word, ...] = ()
    debug: OcrDebugInfo = Field(default_factory=OcrDebugInfo)

    @field_validator("language")
    @classmethod
    def _canonicalize_language(cls, value: str) -> str:
        canonical = canonical_language(value)
        if not canonical:
            raise ValueError("language set must name at least one language")
        return canonical

    @computed_field
    @property
    def lines(self) -> list[Line]:
        from ocr_text_layer.ocr.lines import build_lines

        return build_lines(self.words, language=self.language, page_height=self.height)

    @computed_field
    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)

    @computed_field
    @property
    def confidence(self) -> float:
        if not self.words:
            return 0.0
        return sum(word.confidence for word in self.words) / len(self.words)
