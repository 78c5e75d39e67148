"""Compression run for one image: sequential steps, sticky status flags and an event stream."""
import errno
import logging
import re
import shutil
import threading
import uuid
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from emage.compression.engines import get_operation
from emage.compression.models import EventKind, ImageFile, RunEvent, RunStatus, StepError, StepInfo
from emage.exceptions import SourceCopyError, UnsupportedOperationError

logger = logging.getLogger("emage.pipeline")

EventListener = Callable[[RunEvent], None]

LIBJPEG_HINT = 'You probably need to install "libjpeg" on your computer.'
# macOS dyld and Linux ld.so messages for a missing libjpeg
_LIBJPEG_MISSING = re.compile(r"Library not loaded:.+libjpeg|libjpeg[^:\s]*: cannot open shared object file")


def is_libjpeg_not_found(exc: BaseException) -> bool:
    if getattr(exc, "errno", None) == errno.EPIPE:
        return True
    return bool(_LIBJPEG_MISSING.search(str(exc)))


def working_copy_path(path: Path) -> Path:
    """Reserve the first free sibling name of the form ``<stem> (n)<ext>``.

    The name is claimed by creating an empty file exclusively, so two runs on
    the same source never end up with the same working copy.
    """
    n = 1
    while True:
        candidate = path.with_name(f"{path.stem} ({n}){path.suffix}")
        try:
            with open(candidate, "xb"):
                pass
        except FileExistsError:
            n += 1
            continue
        return candidate


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CompressionRun:
    """Drives one image through its algorithms, one step at a time.

    The run starts as soon as it is constructed. Without an executor the whole
    sequence runs inside the constructor; with one it is submitted as a single
    job, so steps of the same run never overlap. Failures are recorded, never
    raised: watch ``failed``, ``errors`` and the emitted events instead.
    """

    def __init__(
        self,
        image: ImageFile,
        algorithms: Iterable[str],
        keep_source: bool = False,
        on_event: Optional[EventListener] = None,
        executor: Optional[Executor] = None,
    ):
        self.run_id = str(uuid.uuid4())
        self.image = image
        self.keep_source = keep_source
        self._algorithms: list[str] = list(algorithms)
        self._original_size = image.size
        self._size = image.size
        self._current_step: Optional[StepInfo] = None
        self._completed: list[str] = []
        self._errors: list[StepError] = []
        self._failed = False
        self._finished = False
        self.fatal_error: Optional[str] = None
        self.started_at = _now_iso()
        self.finished_at: Optional[str] = None

        self._events: list[RunEvent] = []
        self._listeners: list[EventListener] = [on_event] if on_event else []
        self._lock = threading.RLock()
        self._done_latch = threading.Event()
        self._future: Optional[Future] = None

        self.working_path: Optional[Path] = None
        try:
            self.working_path = self._resolve_working_path(keep_source)
        except SourceCopyError as e:
            logger.error("Run %s cannot start: %s", self.run_id, e)
            self.fatal_error = str(e)

        logger.info(
            "Run %s: %s (%s, %s bytes) with %s",
            self.run_id, image.path.name, image.media_type, image.size, self._algorithms or "no algorithms",
        )
        if executor is None:
            self._run()
        else:
            self._future = executor.submit(self._run)

    # ---------- Observers ----------
    @property
    def size(self) -> int:
        return self._size

    @property
    def original_size(self) -> int:
        return self._original_size

    @property
    def savings(self) -> float:
        """Percentage saved so far, derived from the current and original sizes."""
        if self._original_size <= 0:
            return 0.0
        return 100 * (1 - self._size / self._original_size)

    @property
    def algorithms(self) -> list[str]:
        return list(self._algorithms)

    @property
    def current_step(self) -> Optional[StepInfo]:
        return self._current_step

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def errors(self) -> list[StepError]:
        return list(self._errors)

    @property
    def completed_algorithms(self) -> list[str]:
        return list(self._completed)

    @property
    def events(self) -> list[RunEvent]:
        with self._lock:
            return list(self._events)

    @property
    def status(self) -> RunStatus:
        if not self._finished:
            return RunStatus.RUNNING
        return RunStatus.FAILED if self._failed else RunStatus.COMPLETED

    def subscribe(self, listener: EventListener, replay: bool = True) -> None:
        """Add a listener; with replay it first receives every event emitted so far."""
        with self._lock:
            if replay:
                for event in self._events:
                    self._notify(listener, event)
            self._listeners.append(listener)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the run has finished. Returns False on timeout."""
        return self._done_latch.wait(timeout)

    def to_dict(self) -> dict:
        step = self._current_step
        return {
            "run_id": self.run_id,
            "filename": self.image.path.name,
            "source_path": str(self.image.path),
            "working_path": str(self.working_path) if self.working_path else None,
            "media_type": self.image.media_type,
            "keep_source": self.keep_source,
            "status": self.status.value,
            "algorithms": self.algorithms,
            "current_step": {"algorithm": step.algorithm, "index": step.index, "total": step.total} if step else None,
            "completed_algorithms": self.completed_algorithms,
            "errors": [e.to_dict() for e in self._errors],
            "fatal_error": self.fatal_error,
            "original_size": self._original_size,
            "size": self._size,
            "savings": round(self.savings, 2),
            "failed": self._failed,
            "finished": self._finished,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    # ---------- Run ----------
    def _resolve_working_path(self, keep_source: bool) -> Path:
        source = self.image.path
        if keep_source:
            return source
        try:
            target = working_copy_path(source)
        except OSError as e:
            raise SourceCopyError(f'Could not create a working copy of "{source}": {e}') from e
        try:
            shutil.copy2(source, target)
        except OSError as e:
            target.unlink(missing_ok=True)
            raise SourceCopyError(f'Could not copy "{source}" to "{target}": {e}') from e
        logger.debug("Working copy %s created", target)
        return target

    def _run(self) -> None:
        if self._finished:
            logger.warning("Run %s already finished, not running again", self.run_id)
            return
        try:
            if self.fatal_error is not None:
                self._mark_failed(SourceCopyError(self.fatal_error))
                return
            total = len(self._algorithms)
            for index, algorithm in enumerate(self._algorithms):
                self._step(algorithm, index, total)
            self._current_step = None
            logger.info(
                "Run %s done: %s -> %s bytes (%.1f%%), %s error(s)",
                self.run_id, self._original_size, self._size, self.savings, len(self._errors),
            )
            self._emit(RunEvent(EventKind.DONE, size=self._size))
        except Exception as e:
            logger.exception("Run %s aborted: %s", self.run_id, e)
            self.fatal_error = str(e) or e.__class__.__name__
            self._mark_failed(e)
        finally:
            self._current_step = None
            self.finished_at = _now_iso()
            self._finished = True
            self._emit(RunEvent(EventKind.FINISH))
            self._done_latch.set()

    def _step(self, algorithm: str, index: int, total: int) -> None:
        step = StepInfo(algorithm=algorithm, index=index, total=total)
        self._current_step = step
        self._emit(RunEvent(EventKind.STEP_START, step=step))
        before = self._size
        try:
            new_size = self._compress(algorithm)
        except Exception as e:
            self._record_failure(algorithm, e)
        else:
            if new_size > before:
                logger.warning("%s grew %s to %s bytes, keeping %s", algorithm, self.working_path, new_size, before)
                new_size = before
            if new_size != before:
                self._completed.append(algorithm)
            self._size = new_size
            logger.info("[%s/%s] %s: %s -> %s bytes", index + 1, total, algorithm, before, new_size)
        self._emit(RunEvent(EventKind.STEP_END, step=step, size=self._size))

    def _compress(self, algorithm: str) -> int:
        operation = get_operation(self.image.media_type, algorithm)
        if operation is None:
            raise UnsupportedOperationError(
                f'No "{algorithm}" operation for "{self.image.path}" ({self.image.media_type}).'
            )
        operation.run(self.working_path, self.working_path.parent)
        return self.working_path.stat().st_size

    def _record_failure(self, algorithm: str, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        if algorithm == "jpegoptim" and is_libjpeg_not_found(exc):
            message = LIBJPEG_HINT
        logger.warning("%s failed on %s: %s", algorithm, self.working_path, message)
        self._errors.append(StepError(algorithm=algorithm, message=message))
        self._mark_failed(exc)

    def _mark_failed(self, exc: BaseException) -> None:
        first = not self._failed
        self._failed = True
        if first:
            self._emit(RunEvent(EventKind.FAILED, error=exc))

    def _emit(self, event: RunEvent) -> None:
        with self._lock:
            self._events.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            self._notify(listener, event)

    def _notify(self, listener: EventListener, event: RunEvent) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception("Event listener failed on %s for run %s", event.kind.value, self.run_id)
