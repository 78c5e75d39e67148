from .engines import ALGORITHMS, Operation, algorithms_for, get_operation
from .models import EventKind, ImageFile, RunEvent, RunStatus, StepError, StepInfo
from .pipeline import CompressionRun
from .service import CompressionService

__all__ = [
    "ALGORITHMS",
    "Operation",
    "algorithms_for",
    "get_operation",
    "EventKind",
    "ImageFile",
    "RunEvent",
    "RunStatus",
    "StepError",
    "StepInfo",
    "CompressionRun",
    "CompressionService",
]
