from typing import Any

import pytest
from PIL import Image

pytest.importorskip("paddleocr")

from ocr_text_layer.errors import EngineFailure  # noqa: E402
from ocr_text_layer.models import PageSegMode  # noqa: E402
from ocr_text_layer.ocr import paddle as ocr_paddle  # noqa: E402


class _DummyCuda:
    def __init__(self, count: int) -> None:
        self._count = count

    def device_count(self) -> int:
        return self._count


class _DummyDevice:
    def __init__(self, count: int) -> None:
        self.cuda = _DummyCuda(count)


class _DummyPaddle:
    def __init__(self, compiled: bool, count: int) -> None:
        self._compiled = compiled
        self.device = _DummyDevice(count)

    def is_compiled_with_cuda(self) -> bool:
        return self._compiled


class _CapturingFactory:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> object:
        self.calls.append(kwargs)
        return {"kwargs": kwargs}


class DummyPaddleClient:
    """Minimal stub for PaddleOCR's predict interface."""

    def __init__(self, results: list[object]) -> None:
        self._results = results
        self.calls: list[dict[str, object]] = []

    def predict(self, array: object, **kwargs: object) -> list[object]:
        self.calls.append(dict(kwargs))
        return self._results


@pytest.mark.parametrize(
    ("compiled", "count", "expected"),
    [
        (True, 1, "gpu"),
        (True, 0, "cpu"),
        (False, 3, "cpu"),
    ],
)
def test_choose_device(
    compiled: bool,
    count: int,
    expected: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(ocr_paddle, "paddle", _DummyPaddle(compiled, count))

    assert ocr_paddle._choose_device() == expected


@pytest.mark.parametrize(
    ("device", "expected_mkldnn"),
    [
        ("cpu", False),
        ("gpu", True),
    ],
)
def test_create_paddle_ocr_client_sets_flags(
    device: str,
    expected_mkldnn: bool,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    factory = _CapturingFactory()
    monkeypatch.setattr(ocr_paddle, "PaddleOCR", factory)

    client = ocr_paddle._create_paddle_ocr_client("korean", device)

    assert client == {"kwargs": factory.calls[0]}
    assert factory.calls == [
        {
            "lang": "korean",
            "device": device,
            "enable_mkldnn": expected_mkldnn,
            "enable_cinn": False,
        }
    ]


@pytest.mark.parametrize(
    ("language", "expected"),
    [
        ("eng", "en"),
        ("eng+kor", "korean"),
        ("jpn_vert", "japan"),
        ("fra", "en"),
    ],
)
def test_paddle_language(language: str, expected: str) -> None:
    assert ocr_paddle._paddle_language(language) == expected


def test_recognize_parses_results_and_caches_client_per_language() -> None:
    client = DummyPaddleClient(
        [
            {
                "rec_texts": ["Hello world"],
                "rec_polys": [[0, 0, 110, 0, 110, 20, 0, 20]],
                "rec_scores": [0.9],
            }
        ]
    )
    created: list[tuple[str, str]] = []

    def _factory(lang: str, device: str) -> object:
        created.append((lang, device))
        return client

    engine = ocr_paddle.PaddleOcrEngine(device="cpu", factory=_factory)
    engine.start()
    image = Image.new("L", (120, 30), 255)

    first = engine.recognize(image, "eng", page_seg_mode=PageSegMode.SINGLE_LINE)
    engine.recognize(image, "eng")

    assert created == [("en", "cpu")]
    assert [word.text for word in first.words] == ["Hello", "world"]
    assert first.confidence == pytest.approx(90.0)
    assert client.calls[0]["use_textline_orientation"] is False
    assert client.calls[1]["use_textline_orientation"] is True


def test_recognize_before_start_fails() -> None:
    engine = ocr_paddle.PaddleOcrEngine(factory=lambda lang, device: DummyPaddleClient([]))

    with pytest.raises(EngineFailure):
        engine.recognize(Image.new("RGB", (10, 10)), "eng")
