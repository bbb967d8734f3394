import numpy as np
from PIL import Image, ImageDraw

from ocr_text_layer.errors import EngineFailure
from ocr_text_layer.models import BBox, PageSegMode, Word
from ocr_text_layer.ocr import PagePipeline
from ocr_text_layer.ocr.cancellation import CancellationToken
from ocr_text_layer.ocr.types import ChunkConfig, EngineResult, PipelineConfig, ProgressCallback, ProgressEvent


def _line(top: float, count: int = 8) -> list[Word]:
    words: list[Word] = []
    x = 20.0
    for index in range(count):
        words.append(Word(text=f"token{index}", bbox=BBox(x0=x, y0=top, x1=x + 30, y1=top + 20), confidence=92.0))
        x += 30 + (40 if index == 3 else 8)
    return words


class DummyEngine:
    """Engine stub returning a fixed line of words for full-page passes."""

    def __init__(self, words: list[Word], *, fail_sub_calls: bool = False) -> None:
        self._words = words
        self._fail_sub_calls = fail_sub_calls
        self.images: list[Image.Image] = []
        self.modes: list[PageSegMode] = []

    def start(self) -> None:
        pass

    def shutdown(self) -> None:
        pass

    def recognize(
        self,
        image: Image.Image,
        language: str,
        *,
        page_seg_mode: PageSegMode,
        cancel_token: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> EngineResult:
        self.images.append(image)
        self.modes.append(page_seg_mode)
        if page_seg_mode in (PageSegMode.SINGLE_LINE, PageSegMode.SINGLE_WORD):
            if self._fail_sub_calls:
                raise EngineFailure("sub-call failed")
            return EngineResult(words=(), text="", confidence=0.0)
        return EngineResult(words=tuple(self._words), text="", confidence=0.0)


def _three_tone_page(size: tuple[int, int] = (400, 300)) -> Image.Image:
    image = Image.new("RGB", size, (255, 255, 255))
    draw = ImageDraw.Draw(image)
    draw.rectangle((0, 0, 20, 20), fill=(0, 0, 0))
    draw.rectangle((30, 0, 50, 20), fill=(128, 128, 128))
    return image


def test_recognize_binarizes_latin_pages_only() -> None:
    latin = DummyEngine([])
    PagePipeline(latin).recognize(_three_tone_page(), language="eng")
    cjk = DummyEngine([])
    PagePipeline(cjk).recognize(_three_tone_page(), language="jpn")

    assert set(np.unique(np.asarray(latin.images[0])).tolist()) <= {0, 255}
    assert 128 in np.unique(np.asarray(cjk.images[0])).tolist()
    assert cjk.modes == [PageSegMode.SPARSE_TEXT]


def test_recognize_filters_noise_from_engine_words() -> None:
    noise = Word(text="~", bbox=BBox(x0=20, y0=200, x1=30, y1=220), confidence=20.0)
    engine = DummyEngine(_line(100) + [noise])

    outcome = PagePipeline(engine).recognize(Image.new("RGB", (400, 300), "white"), language="eng")

    assert not outcome.chunked
    assert len(outcome.words) == 8
    assert [item.word.text for item in outcome.dropped] == ["~"]


def test_recognize_chunks_tall_pages_and_reports_progress() -> None:
    config = PipelineConfig(chunking=ChunkConfig(max_width=1000, max_height=500, band_height=400, overlap=100))
    engine = DummyEngine(_line(100))
    events: list[ProgressEvent] = []

    outcome = PagePipeline(engine, config).recognize(
        Image.new("RGB", (400, 700), "white"),
        language="eng",
        progress=events.append,
    )

    assert outcome.chunked
    assert outcome.band_count == 2
    assert not outcome.degraded
    assert sorted({word.bbox.y0 for word in outcome.words}) == [100.0, 400.0]
    assert [event.message for event in events] == ["band 1/2", "band 2/2"]


def test_recognize_marks_chunked_page_degraded_when_recovery_fails() -> None:
    config = PipelineConfig(chunking=ChunkConfig(max_width=1000, max_height=500, band_height=400, overlap=100))
    engine = DummyEngine(_line(100), fail_sub_calls=True)

    outcome = PagePipeline(engine, config).recognize(Image.new("RGB", (400, 700), "white"), language="eng")

    assert outcome.degraded
    assert len(outcome.words) == 16


def test_chunked_recovery_counts_words_across_the_whole_page() -> None:
    config = PipelineConfig(chunking=ChunkConfig(max_width=1000, max_height=500, band_height=400, overlap=100))
    engine = DummyEngine(_line(100, count=5))

    outcome = PagePipeline(engine, config).recognize(Image.new("RGB", (400, 700), "white"), language="eng")

    assert len(outcome.words) == 10
    assert PageSegMode.SINGLE_WORD in engine.modes
    assert not outcome.degraded


def test_chunked_recovery_skips_sparse_pages() -> None:
    config = PipelineConfig(chunking=ChunkConfig(max_width=1000, max_height=500, band_height=400, overlap=100))
    engine = DummyEngine(_line(100, count=2))

    outcome = PagePipeline(engine, config).recognize(Image.new("RGB", (400, 700), "white"), language="eng")

    assert len(outcome.words) == 4
    assert outcome.recovered == ()
    assert PageSegMode.SINGLE_WORD not in engine.modes
    assert PageSegMode.SINGLE_LINE not in engine.modes
