"""Exceptions raised by compression operations and the pipeline setup."""
from typing import Optional


class EmageError(Exception):
    """Base class for all eMage errors."""


class OperationError(EmageError):
    """A compression operation failed (non-zero exit, empty output, timeout)."""

    def __init__(self, message: str, *, algorithm: str = "", returncode: Optional[int] = None, errno: Optional[int] = None):
        super().__init__(message)
        self.algorithm = algorithm
        self.returncode = returncode
        self.errno = errno


class ToolNotFoundError(OperationError):
    """The native optimizer binary is not installed or not on PATH."""


class UnsupportedOperationError(EmageError):
    """No operation exists for the media type / algorithm combination."""


class SourceCopyError(EmageError):
    """The working copy of the source image could not be created."""
