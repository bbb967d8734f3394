from collections.abc import Callable

import pytest
from PIL import Image, ImageDraw

from ocr_text_layer.models import BBox, Word

WordFactory = Callable[..., Word]


def _make_word(
    text: str,
    x0: float,
    y0: float,
    x1: float,
    y1: float,
    confidence: float = 95.0,
) -> Word:
    return Word(text=text, bbox=BBox(x0=x0, y0=y0, x1=x1, y1=y1), confidence=confidence)


@pytest.fixture
def make_word() -> WordFactory:
    return _make_word


@pytest.fixture
def sentence_words() -> list[Word]:
    """Ten confident words laid out as two lines of a paragraph."""
    first = ["The", "quick", "brown", "fox", "jumps"]
    second = ["over", "the", "lazy", "sleeping", "dog"]
    words: list[Word] = []
    for row, tokens in enumerate((first, second)):
        x = 20.0
        top = 40.0 + row * 40.0
        for token in tokens:
            width = 12.0 * len(token)
            words.append(_make_word(token, x, top, x + width, top + 20.0, 92.0))
            x += width + 8.0
    return words


@pytest.fixture
def blank_page() -> Image.Image:
    return Image.new("RGB", (400, 300), "white")


@pytest.fixture
def striped_page() -> Image.Image:
    """White page with three solid dark bars standing in for lines of ink."""
    image = Image.new("L", (400, 300), 255)
    draw = ImageDraw.Draw(image)
    for top in (40, 120, 200):
        draw.rectangle((30, top, 330, top + 20), fill=0)
    return image
