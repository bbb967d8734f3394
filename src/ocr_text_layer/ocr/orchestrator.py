import logging
import threading
from dataclasses import dataclass
from queue import Queue
from typing import Literal, Protocol

from ocr_text_layer.cache.fingerprint import Fingerprint
from ocr_text_layer.cache.manager import CacheHit, CacheManager
from ocr_text_layer.errors import EngineFailure, OcrCanceled, OcrPipelineError, RenderFailure
from ocr_text_layer.models import OcrDebugInfo, PageOCRResult, PageSegMode
from ocr_text_layer.ocr import PagePipeline
from ocr_text_layer.ocr.cancellation import CancellationToken
from ocr_text_layer.ocr.clients import OcrEngine, default_page_seg_mode
from ocr_text_layer.ocr.rasterizer import Rasterizer, render_with_retry
from ocr_text_layer.ocr.types import (
    DEFAULT_PIPELINE_CONFIG,
    PipelineConfig,
    ProgressCallback,
    ProgressEvent,
    ProgressStage,
)
from ocr_text_layer.telemetry import FailureEvent, FailureKind, FailureSink, LoggingFailureSink
from ocr_text_layer.text import canonical_language

logger = logging.getLogger(__name__)

PageJobState = Literal["init", "rendering", "ocr", "recovering", "complete", "canceled", "failed"]
TERMINAL_STATES: frozenset[str] = frozenset({"complete", "canceled", "failed"})


@dataclass(frozen=True)
class PageOcrRequest:
    """What to OCR: one page of one document at a given language and dpi."""

    document_id: int
    page_number: int
    page_ref: object
    language: str
    dpi: int = 300
    page_seg_mode: PageSegMode | None = None

    @property
    def key(self) -> tuple[int, int]:
        return self.document_id, self.page_number

    @property
    def canonical_language(self) -> str:
        return canonical_language(self.language)

    @property
    def resolved_page_seg_mode(self) -> PageSegMode:
        if self.page_seg_mode is not None:
            return self.page_seg_mode
        return default_page_seg_mode(self.canonical_language)

    def fingerprint(self) -> Fingerprint:
        return Fingerprint.create(self.language, self.dpi, self.resolved_page_seg_mode)


class ResultConsumer(Protocol):
    def on_result(self, page_number: int, result: PageOCRResult) -> None: ...

    def on_cache_hit(self, page_number: int, result: PageOCRResult) -> None: ...

    def on_stale_result(self, page_number: int, result: PageOCRResult) -> None: ...


class PageJob:
    """One page OCR job with its own cancellation token and progress channel."""

    def __init__(self, request: PageOcrRequest, observer: ProgressCallback | None = None) -> None:
        self.request = request
        self.token = CancellationToken()
        self.events: Queue[ProgressEvent] = Queue()
        self.error: OcrPipelineError | None = None
        self.result: PageOCRResult | None = None
        self.from_cache = False
        self._observer = observer
        self._state: PageJobState = "init"
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def state(self) -> PageJobState:
        with self._lock:
            return self._state

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        self.token.cancel()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def transition(self, state: PageJobState) -> None:
        with self._lock:
            if self._state in TERMINAL_STATES:
                return
            self._state = state
        if state in TERMINAL_STATES:
            self._done.set()

    def report(self, event: ProgressEvent) -> None:
        # Progress stops the moment cancellation is observed.
        if self.token.canceled:
            return
        self.events.put(event)
        if self._observer is not None:
            self._observer(event)

    def progress(self, stage: ProgressStage, fraction: float, message: str = "") -> None:
        self.report(ProgressEvent(stage=stage, fraction=fraction, message=message))


class PageOcrOrchestrator:
    """Run page OCR jobs: cache lookup, render, OCR, recovery, cache write.

    The orchestrator owns the engine lifecycle and the background cache
    flush; call `start()` before submitting jobs and `shutdown()` when done.
    At most one job per (document, page) is active: a new request cancels
    the previous one.
    """

    def __init__(
        self,
        rasterizer: Rasterizer,
        engine: OcrEngine,
        cache: CacheManager,
        *,
        consumer: ResultConsumer | None = None,
        config: PipelineConfig = DEFAULT_PIPELINE_CONFIG,
        failure_sink: FailureSink | None = None,
        workers: int = 2,
        flush_interval: float = 30.0,
    ) -> None:
        self._rasterizer = rasterizer
        self._engine = engine
        self._cache = cache
        self._consumer = consumer
        self._config = config
        self._failure_sink = failure_sink or LoggingFailureSink()
        self._pipeline = PagePipeline(engine, config)
        self._worker_count = workers
        self._flush_interval = flush_interval
        self._jobs: dict[tuple[int, int], PageJob] = {}
        self._queue: Queue[PageJob | None] = Queue()
        self._workers: list[threading.Thread] = []
        self._lock = threading.Lock()

    def start(self) -> None:
        if self._workers:
            return
        self._engine.start()
        self._cache.start_background_flush(self._flush_interval)
        for index in range(self._worker_count):
            worker = threading.Thread(target=self._worker_loop, name=f"page-ocr-{index}", daemon=True)
            worker.start()
            self._workers.append(worker)
        logger.info("Page OCR orchestrator started with %d workers.", self._worker_count)

    def shutdown(self, *, timeout: float = 10.0) -> None:
        with self._lock:
            jobs = list(self._jobs.values())
        for job in jobs:
            job.cancel()
        for _ in self._workers:
            self._queue.put(None)
        for worker in self._workers:
            worker.join(timeout=timeout)
        self._workers = []
        self._cache.stop_background_flush()
        self._engine.shutdown()
        logger.info("Page OCR orchestrator stopped.")

    def set_active_document(self, document_id: int | None, display_name: str | None = None) -> None:
        self._cache.set_active_document(document_id, display_name)
        with self._lock:
            stale = [job for key, job in self._jobs.items() if key[0] != document_id]
        for job in stale:
            job.cancel()

    def request(self, request: PageOcrRequest, *, observer: ProgressCallback | None = None) -> PageJob:
        """Schedule OCR for a page, canceling any in-flight job for the same page."""
        if not self._workers:
            raise RuntimeError("PageOcrOrchestrator.start() must be called before request()")
        job = PageJob(request, observer)
        with self._lock:
            previous = self._jobs.get(request.key)
            self._jobs[request.key] = job
        if previous is not None:
            logger.debug("Canceling superseded job for document %s page %s.", *request.key)
            previous.cancel()
        self._queue.put(job)
        return job

    def active_job(self, document_id: int, page_number: int) -> PageJob | None:
        with self._lock:
            return self._jobs.get((document_id, page_number))

    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                return
            try:
                self.process(job)
            except Exception:
                logger.exception("Unexpected error in page job for document %s page %s.", *job.request.key)
                job.transition("failed")

    def _is_current(self, job: PageJob) -> bool:
        if job.token.canceled:
            return False
        with self._lock:
            if self._jobs.get(job.request.key) is not job:
                return False
        active = self._cache.active_document
        document_id = job.request.document_id
        return active is None or active in (document_id, self._cache.resolve_document(document_id))

    def _release(self, job: PageJob) -> None:
        with self._lock:
            if self._jobs.get(job.request.key) is job:
                del self._jobs[job.request.key]

    def _emit_failure(self, kind: FailureKind, job: PageJob, message: str) -> None:
        self._failure_sink.emit(
            FailureEvent(
                kind=kind,
                document_id=job.request.document_id,
                page_number=job.request.page_number,
                message=message,
            )
        )

    def process(self, job: PageJob) -> PageJob:
        """Run `job` to a terminal state on the calling thread."""
        try:
            self._run(job)
        except OcrCanceled:
            logger.debug("Job for document %s page %s canceled.", *job.request.key)
            job.transition("canceled")
        except (RenderFailure, EngineFailure) as exc:
            job.error = exc
            kind: FailureKind = "render_failed" if isinstance(exc, RenderFailure) else "engine_failed"
            logger.error("OCR failed for document %s page %s: %s", *job.request.key, exc)
            self._emit_failure(kind, job, str(exc))
            job.transition("failed")
        finally:
            self._release(job)
        return job

    def _run(self, job: PageJob) -> None:
        request = job.request
        token = job.token
        token.raise_if_canceled()

        job.progress("cache", 0.0)
        lookup = self._cache.lookup(request.document_id, request.page_number, request.fingerprint())
        if isinstance(lookup, CacheHit):
            if not self._is_current(job):
                raise OcrCanceled()
            if not lookup.stale:
                job.result = lookup.result
                job.from_cache = True
                job.progress("complete", 1.0, "cache hit")
                if self._consumer is not None:
                    self._consumer.on_cache_hit(request.page_number, lookup.result)
                job.transition("complete")
                return
            if self._consumer is not None:
                self._consumer.on_stale_result(request.page_number, lookup.result)

        job.transition("rendering")
        job.progress("rendering", 0.05)
        rendered = render_with_retry(
            self._rasterizer,
            request.page_ref,
            request.dpi,
            config=self._config.render_retry,
            cancel_token=token,
            sleep=token.wait,
        )
        token.raise_if_canceled()

        job.transition("ocr")
        job.progress("ocr", 0.1)
        language = request.canonical_language
        primary = self._pipeline.recognize(
            rendered.image,
            language=language,
            page_seg_mode=request.resolved_page_seg_mode,
            cancel_token=token,
            progress=job.report,
        )
        token.raise_if_canceled()

        job.transition("recovering")
        job.progress("recovering", 0.8)
        words = primary.words
        if primary.degraded:
            self._emit_failure("recovery_degraded", job, "one or more bands lost OCR or recovery")
        if not primary.chunked:
            try:
                words = self._pipeline.recover(
                    primary.words, rendered.image, language=language, cancel_token=token
                ).words
            except EngineFailure as exc:
                logger.warning(
                    "Recovery failed for document %s page %s, keeping primary result: %s",
                    *request.key,
                    exc,
                )
                self._emit_failure("recovery_degraded", job, str(exc))
        token.raise_if_canceled()

        result = PageOCRResult(
            page_number=request.page_number,
            language=language,
            dpi=request.dpi,
            page_seg_mode=request.resolved_page_seg_mode,
            width=rendered.width,
            height=rendered.height,
            words=words,
            debug=OcrDebugInfo.from_dropped(primary.dropped),
        )
        if not self._is_current(job):
            logger.debug("Discarding superseded result for document %s page %s.", *request.key)
            raise OcrCanceled()
        if self._cache.store(request.document_id, request.page_number, result) == "write_failed":
            self._emit_failure("cache_write_failed", job, "result kept in memory until the next flush")
        job.result = result
        job.progress("complete", 1.0)
        # Waiters wake on the terminal state; deliver first.
        if self._consumer is not None:
            self._consumer.on_result(request.page_number, result)
        job.transition("complete")
