from typing import TYPE_CHECKING

from PIL import Image, ImageOps

from ocr_text_layer.models import BBox
from ocr_text_layer.ocr.lines import clamp_bbox

if TYPE_CHECKING:
    import numpy as np


def to_grayscale(image: Image.Image) -> Image.Image:
    if image.mode == "L":
        return image
    # ImageOps.grayscale drops alpha without compositing; flatten onto white first.
    if image.mode in ("RGBA", "LA", "P"):
        rgba = image.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        image = Image.alpha_composite(background, rgba)
    return ImageOps.grayscale(image)


def grayscale_array(image: Image.Image) -> "np.ndarray":
    import numpy as np

    return np.asarray(to_grayscale(image), dtype=np.uint8)


def otsu_threshold(gray: "np.ndarray") -> int:
    """Return the Otsu threshold of an 8-bit grayscale array."""
    import numpy as np

    histogram = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
    total = histogram.sum()
    if total == 0:
        return 127
    levels = np.arange(256, dtype=np.float64)
    weight_bg = np.cumsum(histogram)
    weight_fg = total - weight_bg
    cumulative_mean = np.cumsum(histogram * levels)
    global_mean = cumulative_mean[-1] / total
    with np.errstate(divide="ignore", invalid="ignore"):
        between = (global_mean * weight_bg - cumulative_mean) ** 2 / (weight_bg * weight_fg)
    between = np.nan_to_num(between, nan=0.0, posinf=0.0)
    return int(np.argmax(between))


def binarize(image: Image.Image) -> Image.Image:
    """Autocontrast then Otsu-binarize; dark text ends up black on white."""
    import numpy as np

    gray = ImageOps.autocontrast(to_grayscale(image))
    array = np.asarray(gray, dtype=np.uint8)
    threshold = otsu_threshold(array)
    binary = Image.fromarray(np.where(array > threshold, 255, 0).astype(np.uint8))
    # Engines read the resolution from info["dpi"].
    binary.info.update(image.info)
    return binary


def prepare_engine_image(image: Image.Image, *, binarized: bool) -> Image.Image:
    if binarized:
        return binarize(image)
    prepared = ImageOps.autocontrast(to_grayscale(image))
    prepared.info.update(image.info)
    return prepared


def crop_with_fill(
    image: Image.Image,
    region: BBox,
    *,
    margin: int = 0,
    min_size: int = 8,
) -> tuple[Image.Image, tuple[int, int]] | None:
    """Crop `region` onto a white canvas with `margin` pixels of border.

    Returns the crop and the page-space offset of its top-left pixel, or None
    when the clamped region is smaller than `min_size` in either direction.
    """
    clamped = clamp_bbox(region, image.width, image.height)
    if clamped is None:
        return None
    left, top = int(clamped.x0), int(clamped.y0)
    right, bottom = int(round(clamped.x1)), int(round(clamped.y1))
    if right - left < min_size or bottom - top < min_size:
        return None
    crop = image.crop((left, top, right, bottom))
    fill = 255 if crop.mode == "L" else (255, 255, 255)
    if crop.mode not in ("L", "RGB"):
        crop = crop.convert("RGB")
    canvas = Image.new(crop.mode, (crop.width + 2 * margin, crop.height + 2 * margin), fill)
    canvas.paste(crop, (margin, margin))
    return canvas, (left - margin, top - margin)


def ink_row_bands(gray: "np.ndarray", *, min_height: int) -> list[BBox]:
    """Find horizontal bands of ink by row projection of a binarized page.

    Each band is bounded horizontally by the first and last inked column
    inside it. Bands thinner than `min_height` are ignored.
    """
    import numpy as np

    if gray.size == 0:
        return []
    threshold = otsu_threshold(gray)
    ink = gray <= threshold
    height, width = ink.shape
    row_counts = ink.sum(axis=1)
    inked_rows = row_counts >= max(1, int(width * 0.002))
    bands: list[BBox] = []
    start: int | None = None
    for row in range(height + 1):
        active = row < height and bool(inked_rows[row])
        if active and start is None:
            start = row
        elif not active and start is not None:
            if row - start >= min_height:
                columns = np.flatnonzero(ink[start:row].any(axis=0))
                if columns.size:
                    bands.append(
                        BBox(
                            x0=float(columns[0]),
                            y0=float(start),
                            x1=float(columns[-1] + 1),
                            y1=float(row),
                        )
                    )
            start = None
    return bands
