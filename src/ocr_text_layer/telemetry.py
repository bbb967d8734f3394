import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

FailureKind = Literal["render_failed", "engine_failed", "recovery_degraded", "cache_write_failed"]


@dataclass(frozen=True)
class FailureEvent:
    """Failure observed while processing a page."""

    kind: FailureKind
    document_id: int
    page_number: int
    message: str
    timestamp: float = field(default_factory=time.time)


class FailureSink(Protocol):
    def emit(self, event: FailureEvent) -> None: ...


class LoggingFailureSink:
    """Report failure events through the module logger."""

    def emit(self, event: FailureEvent) -> None:
        logger.warning(
            "OCR %s for document %s page %s: %s",
            event.kind,
            event.document_id,
            event.page_number,
            event.message,
        )


class JsonlFailureSink:
    """Append failure events to a JSON-lines file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def emit(self, event: FailureEvent) -> None:
        line = json.dumps(asdict(event), ensure_ascii=False)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
