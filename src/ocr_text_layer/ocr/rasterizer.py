import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import pypdfium2 as pdfium
from PIL import Image, UnidentifiedImageError

from ocr_text_layer.errors import RenderFailure, RenderTimeout
from ocr_text_layer.models import BBox
from ocr_text_layer.ocr.cancellation import CancellationToken, check_canceled
from ocr_text_layer.ocr.lines import clamp_bbox
from ocr_text_layer.ocr.types import DEFAULT_RENDER_RETRY_CONFIG, RenderRetryConfig

logger = logging.getLogger(__name__)

# PDF user space is 1/72 inch.
PDF_POINTS_PER_INCH = 72.0


@dataclass(frozen=True)
class RenderedPage:
    """Bitmap produced by a rasterizer, in pixels at the requested dpi."""

    image: Image.Image
    width: int
    height: int

    @classmethod
    def from_image(cls, image: Image.Image) -> "RenderedPage":
        return cls(image=image, width=image.width, height=image.height)


class Rasterizer(Protocol):
    def render(self, page_ref: object, dpi: int, *, region: BBox | None = None) -> RenderedPage: ...


def _crop_region(image: Image.Image, region: BBox | None) -> Image.Image:
    if region is None:
        return image
    clamped = clamp_bbox(region, image.width, image.height)
    if clamped is None:
        raise RenderFailure(f"Region {region.as_tuple()} lies outside the page")
    return image.crop((int(clamped.x0), int(clamped.y0), int(round(clamped.x1)), int(round(clamped.y1))))


class PdfiumRasterizer:
    """Render pages of one PDF with pypdfium2; `page_ref` is a 1-based page number."""

    def __init__(self, pdf_file: Path) -> None:
        self._pdf_file = Path(pdf_file)
        self._document: pdfium.PdfDocument | None = None
        # PDFium is not thread-safe.
        self._lock = threading.Lock()

    def _open(self) -> pdfium.PdfDocument:
        if self._document is None:
            try:
                self._document = pdfium.PdfDocument(str(self._pdf_file))
            except pdfium.PdfiumError as exc:
                raise RenderFailure(f"Cannot open {self._pdf_file}: {exc}") from exc
        return self._document

    def page_count(self) -> int:
        with self._lock:
            return len(self._open())

    def render(self, page_ref: object, dpi: int, *, region: BBox | None = None) -> RenderedPage:
        page_number = int(page_ref)
        with self._lock:
            document = self._open()
            if page_number < 1 or page_number > len(document):
                raise RenderFailure(f"Page out of range: {page_number} (1..{len(document)})")
            page = document[page_number - 1]
            try:
                image = page.render(scale=dpi / PDF_POINTS_PER_INCH).to_pil()
            except pdfium.PdfiumError as exc:
                raise RenderFailure(f"Cannot render page {page_number}: {exc}") from exc
            finally:
                page.close()
        image = image.convert("RGB")
        image.info["dpi"] = (dpi, dpi)
        return RenderedPage.from_image(_crop_region(image, region))

    def close(self) -> None:
        with self._lock:
            if self._document is not None:
                self._document.close()
                self._document = None


class ImageFileRasterizer:
    """Load raster images from disk; `page_ref` is the image path.

    Images are used at their native resolution. The requested dpi is recorded
    on the image so engines that read `info["dpi"]` size glyphs correctly.
    """

    def render(self, page_ref: object, dpi: int, *, region: BBox | None = None) -> RenderedPage:
        path = Path(str(page_ref))
        try:
            with Image.open(path) as source:
                image = source.convert("RGB")
        except (FileNotFoundError, UnidentifiedImageError, OSError) as exc:
            raise RenderFailure(f"Cannot load {path}: {exc}") from exc
        image.info["dpi"] = (dpi, dpi)
        return RenderedPage.from_image(_crop_region(image, region))


def render_with_retry(
    rasterizer: Rasterizer,
    page_ref: object,
    dpi: int,
    *,
    region: BBox | None = None,
    config: RenderRetryConfig = DEFAULT_RENDER_RETRY_CONFIG,
    cancel_token: CancellationToken | None = None,
    sleep: Callable[[float], object] = time.sleep,
) -> RenderedPage:
    """Render a page, retrying timeouts with exponential backoff.

    Only `RenderTimeout` is retried; any other `RenderFailure` is raised at
    once. The last timeout is re-raised once `config.attempts` is spent.
    Passing `sleep=cancel_token.wait` makes the backoff interruptible.
    """
    delay = config.initial_delay
    for attempt in range(1, config.attempts + 1):
        check_canceled(cancel_token)
        try:
            return rasterizer.render(page_ref, dpi, region=region)
        except RenderTimeout as exc:
            if attempt == config.attempts:
                raise
            logger.warning(
                "Render of %r timed out (attempt %d/%d), retrying in %.2fs: %s",
                page_ref,
                attempt,
                config.attempts,
                delay,
                exc,
            )
        sleep(delay)
        delay = min(delay * config.backoff, config.max_delay)
    raise RenderFailure(f"No render attempts configured for {page_ref!r}")
