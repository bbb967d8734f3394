class OcrPipelineError(Exception):
    """Base class for failures raised by the OCR pipeline."""


class RenderFailure(OcrPipelineError):
    """The rasterizer could not produce an image for the page."""


class RenderTimeout(RenderFailure):
    """The rasterizer did not finish in time; the render may be retried."""


class EngineFailure(OcrPipelineError):
    """The OCR engine raised or returned an unusable payload."""


class CacheReadFailure(OcrPipelineError):
    """The persistent tier could not be read; lookups treat this as a miss."""


class CacheWriteFailure(OcrPipelineError):
    """The persistent tier rejected a write."""


class AliasResolutionFailure(OcrPipelineError):
    """Looking up documents that share a display name failed."""


class OcrCanceled(Exception):
    """A page job observed its cancellation token.

    Not an `OcrPipelineError`; canceled jobs end in the "canceled" state.
    """
