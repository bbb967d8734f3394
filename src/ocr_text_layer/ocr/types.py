from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from ocr_text_layer.models import Word

ProgressStage = Literal["cache", "rendering", "ocr", "filtering", "recovering", "complete"]


@dataclass(frozen=True)
class ProgressEvent:
    """Progress report for one page job; `fraction` is in [0, 1]."""

    stage: ProgressStage
    fraction: float
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class EngineResult:
    """Raw engine output for one image or crop."""

    words: tuple[Word, ...]
    text: str
    confidence: float


@dataclass(frozen=True)
class FilterConfig:
    """Thresholds for the quality filters."""

    noise_min_conf_single: float = 60.0
    noise_min_conf_short: float = 50.0
    noise_mixed_case_min_conf: float = 70.0
    noise_dense_line_words: int = 3
    noise_keep_single_chars: frozenset[str] = frozenset({"a", "A", "I", "&", "O"})

    tile_min_size: int = 24
    tile_max_size: int = 64
    tile_sample_step: int = 2
    tile_mid_low: int = 40
    tile_mid_high: int = 215
    tile_mid_ratio: float = 0.55
    tile_variance: float = 900.0
    tile_edge: float = 18.0
    tile_edge_variance: float = 600.0
    tile_text_min_words: int = 2
    tile_text_coverage: float = 0.18
    tile_text_conf: float = 80.0
    tile_hole_fill_min: int = 5
    tile_inside_ratio: float = 0.5
    tile_keep_height_ratio: float = 0.03
    tile_keep_conf: float = 85.0

    protect_line_words: int = 4
    protect_line_conf: float = 88.0

    photo_bg_variance: float = 1800.0
    bg_title_height_ratio: float = 0.06
    bg_min_conf: float = 70.0
    bg_min_height_ratio: float = 0.012
    bg_min_conf_non_latin_short: float = 85.0

    isolated_cjk_max_len: int = 2
    isolated_cjk_min_conf: float = 80.0
    isolated_single_char_conf: float = 90.0
    isolated_neighbor_gap_mult: float = 1.5
    isolated_neighbor_overlap: float = 0.5

    kor_jamo_strict_conf: float = 90.0
    kor_jamo_mixed_strict_conf: float = 85.0
    kor_repeated_jamo_conf: float = 92.0
    kor_nonsyllable_digit_conf: float = 75.0
    kor_nonsyllable_ascii_short_conf: float = 80.0
    kor_nonsyllable_short_max_len: int = 2

    weak_line_max_words: int = 2
    weak_line_max_chars: int = 3
    weak_line_conf: float = 75.0
    weak_line_single_conf: float = 85.0
    weak_line_min_variance: float = 400.0
    weak_line_neighbor_gap_mult: float = 1.2
    weak_line_x_overlap: float = 0.3
    ghost_short_chars: int = 3
    ghost_no_syllable_conf: float = 88.0
    ghost_line_conf: float = 80.0
    ghost_jamo_ratio: float = 0.35


@dataclass(frozen=True)
class RecoveryConfig:
    """Thresholds for fallback recovery."""

    min_words: int = 8
    max_passes: int = 4
    dedupe_iou: float = 0.5
    empty_line_dedupe_iou: float = 0.55

    max_empty_lines: int = 6
    empty_line_min_height: int = 6
    empty_line_min_area_ratio: float = 0.00014
    empty_line_pad_x_ratio: float = 0.25
    empty_line_pad_y_ratio: float = 0.35
    empty_line_min_conf: float = 60.0

    gap_min_px: float = 12.0
    gap_median_mult: float = 1.6
    gap_median_mult_cjk: float = 1.1
    gap_height_mult: float = 0.9
    gap_height_mult_cjk: float = 0.6
    gap_pad_ratio: float = 0.25
    max_gaps_per_line: int = 3
    gap_budget: int = 20
    gap_max_len: int = 6
    gap_max_len_cjk: int = 3
    gap_min_conf: float = 55.0

    vertical_gap_max_words: int = 80
    vertical_gap_min_ratio: float = 0.04
    vertical_gap_min_mult: float = 2.5
    vertical_gap_pad_ratio: float = 0.35
    vertical_gap_max_regions: int = 4
    vertical_gap_min_conf: float = 65.0

    min_crop_px: int = 8
    crop_margin: int = 4


@dataclass(frozen=True)
class ChunkConfig:
    """Band geometry for oversized pages."""

    max_width: int = 4000
    max_height: int = 4000
    band_height: int = 2000
    overlap: int = 200
    edge_margin: float = 2.0
    dedupe_iou: float = 0.5


@dataclass(frozen=True)
class RenderRetryConfig:
    """Bounded retry with exponential backoff for timed-out renders."""

    attempts: int = 3
    initial_delay: float = 0.25
    backoff: float = 2.0
    max_delay: float = 2.0


@dataclass(frozen=True)
class PipelineConfig:
    """All tunables for a page job."""

    filters: FilterConfig = field(default_factory=FilterConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    chunking: ChunkConfig = field(default_factory=ChunkConfig)
    render_retry: RenderRetryConfig = field(default_factory=RenderRetryConfig)
    binarize_latin: bool = True


DEFAULT_FILTER_CONFIG = FilterConfig()
DEFAULT_RECOVERY_CONFIG = RecoveryConfig()
DEFAULT_CHUNK_CONFIG = ChunkConfig()
DEFAULT_RENDER_RETRY_CONFIG = RenderRetryConfig()
DEFAULT_PIPELINE_CONFIG = PipelineConfig()
