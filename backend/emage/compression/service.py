"""Compression service: starts independent runs on a shared worker pool and keeps them by id."""
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, Union

from emage.config import KEEP_SOURCE_DEFAULT, MAX_WORKERS
from emage.compression.models import EventKind, ImageFile, RunEvent
from emage.compression.pipeline import CompressionRun
from emage.db import record_run

logger = logging.getLogger("emage.service")

RunCallback = Callable[[CompressionRun], None]


class CompressionService:
    """Holds compression runs and schedules each one as a single pool job."""

    def __init__(self, max_workers: int = MAX_WORKERS, on_finish: Optional[RunCallback] = None):
        self._runs: dict[str, CompressionRun] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="emage-run")
        self._on_finish = on_finish
        logger.info("CompressionService initialized with max_workers=%s", max_workers)

    def start(
        self,
        path: Union[str, Path],
        algorithms: list[str],
        keep_source: Optional[bool] = None,
        media_type: Optional[str] = None,
    ) -> CompressionRun:
        """Start compressing one image. Raises FileNotFoundError if the image does not exist."""
        image = ImageFile.from_path(path, media_type=media_type)
        if keep_source is None:
            keep_source = KEEP_SOURCE_DEFAULT
        run = CompressionRun(image, algorithms, keep_source=keep_source, executor=self._executor)
        self._runs[run.run_id] = run
        if self._on_finish is not None:
            run.subscribe(self._finish_listener(run))
        return run

    def _finish_listener(self, run: CompressionRun) -> Callable[[RunEvent], None]:
        def listener(event: RunEvent) -> None:
            if event.kind is EventKind.FINISH:
                self._on_finish(run)

        return listener

    def get_run(self, run_id: str) -> Optional[CompressionRun]:
        return self._runs.get(run_id)

    def list_runs(self) -> list[CompressionRun]:
        return list(self._runs.values())

    def forget(self, run_id: str) -> None:
        """Drop a finished run. Its working file stays on disk."""
        run = self._runs.get(run_id)
        if run is not None and run.finished:
            del self._runs[run_id]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


# Singleton
_compression_service: Optional[CompressionService] = None


def get_compression_service() -> CompressionService:
    global _compression_service
    if _compression_service is None:
        _compression_service = CompressionService(on_finish=record_run)
    return _compression_service


def shutdown_compression_service(wait: bool = True) -> None:
    global _compression_service
    if _compression_service is not None:
        _compression_service.shutdown(wait=wait)
        _compression_service = None
