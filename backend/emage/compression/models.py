"""Compression run models: image descriptor, step records and events."""
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("emage.models")

UNKNOWN_MEDIA_TYPE = "application/octet-stream"

# Extension -> media type. SVG is not readable by Pillow so it has to be listed here.
_EXT_TO_MIME = {
    ".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".jpe": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
}


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EventKind(str, Enum):
    STEP_START = "step-start"
    STEP_END = "step-end"
    DONE = "done"
    FAILED = "failed"
    FINISH = "finish"


@dataclass(frozen=True)
class ImageFile:
    """The image a run works on. Owned by the caller; size is taken once, before the run."""

    path: Path
    media_type: str
    size: int

    @classmethod
    def from_path(cls, path: Union[str, Path], media_type: Optional[str] = None) -> "ImageFile":
        path = Path(path).absolute()
        size = path.stat().st_size
        return cls(path=path, media_type=media_type or guess_media_type(path), size=size)


@dataclass(frozen=True)
class StepInfo:
    algorithm: str
    index: int
    total: int


@dataclass(frozen=True)
class StepError:
    algorithm: Optional[str]
    message: str

    def to_dict(self) -> dict:
        return {"algorithm": self.algorithm, "message": self.message}


@dataclass(frozen=True)
class RunEvent:
    kind: EventKind
    step: Optional[StepInfo] = None
    size: Optional[int] = None
    error: Optional[BaseException] = None

    def to_dict(self) -> dict:
        out: dict = {"kind": self.kind.value}
        if self.step is not None:
            out.update(algorithm=self.step.algorithm, index=self.step.index, total=self.step.total)
        if self.size is not None:
            out["size"] = self.size
        if self.error is not None:
            out["error"] = str(self.error)
        return out


def guess_media_type(path: Path) -> str:
    """Media type from the file extension, else from the content via Pillow."""
    mime = _EXT_TO_MIME.get(path.suffix.lower())
    if mime:
        return mime
    try:
        with Image.open(path) as img:
            mime = Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError) as e:
        logger.debug("Could not sniff media type of %s: %s", path, e)
        return UNKNOWN_MEDIA_TYPE
    return mime or UNKNOWN_MEDIA_TYPE
