"""Compression engines: map (media type, algorithm) to a configured native optimizer call."""
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from emage import config
from emage.exceptions import OperationError, ToolNotFoundError

logger = logging.getLogger("emage.engines")

# How a tool delivers its result
OUTFILE = "outfile"  # writes to the output path given on the command line
STDOUT = "stdout"    # writes the optimized image to stdout
INPLACE = "inplace"  # rewrites the file it is given, so it runs on a scratch copy

ALGORITHMS = {
    "jpeg": ("jpegoptim", "jpegtran", "mozjpeg"),
    "png": ("advpng", "optipng", "pngcrush", "pngout", "zopfli"),
    "svg": ("svgo",),
    "gif": ("giflossy", "gifsicle"),
}

_FAMILY_PATTERNS = (
    ("jpeg", re.compile(r"image/jpe?g")),
    ("png", re.compile(r"image/png")),
    ("svg", re.compile(r"image/svg")),
    ("gif", re.compile(r"image/gif")),
)

ArgvBuilder = Callable[[str, Path, Path], list[str]]


@dataclass(frozen=True)
class Operation:
    """A ready-to-run compression call with its fixed tuning options."""

    algorithm: str
    family: str
    tool: str
    options: dict = field(default_factory=dict)
    mode: str = OUTFILE
    argv: Optional[ArgvBuilder] = field(default=None, repr=False, compare=False)
    # exit codes meaning "nothing to gain", the input is kept as is
    unchanged_codes: tuple = ()

    def command(self, src: Path, out: Path) -> list[str]:
        return self.argv(config.TOOL_PATHS.get(self.tool, self.tool), src, out)

    def run(self, path: Path, out_dir: Path, timeout: Optional[int] = None) -> Path:
        """Optimize ``path`` and write the result as ``out_dir / path.name``.

        The result only replaces the destination when it is not larger than
        the input. Raises OperationError (ToolNotFoundError when the binary is
        missing).
        """
        path = Path(path)
        out_dir = Path(out_dir)
        if not path.is_file():
            raise OperationError(f'Invalid file name "{path}".', algorithm=self.algorithm)
        dest = out_dir / path.name
        tmp = out_dir / f".{path.stem}.{self.algorithm}.tmp{path.suffix}"
        timeout = timeout or config.STEP_TIMEOUT
        try:
            if self.mode == INPLACE:
                shutil.copyfile(path, tmp)
            cmd = self.command(path, tmp)
            logger.debug("Running %s: %s", self.algorithm, " ".join(cmd))
            result = subprocess.run(cmd, capture_output=True, timeout=timeout)
            if result.returncode in self.unchanged_codes:
                logger.info("%s left %s unchanged (exit %s)", self.algorithm, path.name, result.returncode)
                _keep_input(path, dest)
                return dest
            if result.returncode != 0:
                stderr = result.stderr.decode("utf-8", "replace").strip()
                stdout = result.stdout.decode("utf-8", "replace").strip() if self.mode != STDOUT else ""
                raise OperationError(
                    stderr or stdout or f"{self.tool} failed with exit code {result.returncode}",
                    algorithm=self.algorithm,
                    returncode=result.returncode,
                )
            if self.mode == STDOUT:
                tmp.write_bytes(result.stdout)
            if not tmp.is_file() or tmp.stat().st_size == 0:
                raise OperationError(f"{self.tool} produced no output for {path.name}", algorithm=self.algorithm)
            if tmp.stat().st_size > path.stat().st_size:
                logger.info("%s output is larger than %s, keeping the input", self.algorithm, path.name)
                _keep_input(path, dest)
                return dest
            os.replace(tmp, dest)
            return dest
        except FileNotFoundError as e:
            if e.filename is not None and Path(str(e.filename)) in (path, tmp, dest):
                raise OperationError(str(e), algorithm=self.algorithm, errno=e.errno) from e
            raise ToolNotFoundError(
                f'"{self.tool}" not found. Install {self.tool} to use {self.algorithm}.',
                algorithm=self.algorithm,
                errno=e.errno,
            ) from e
        except subprocess.TimeoutExpired as e:
            raise OperationError(f"{self.algorithm} timed out after {timeout}s", algorithm=self.algorithm) from e
        except OSError as e:
            raise OperationError(str(e), algorithm=self.algorithm, errno=e.errno) from e
        finally:
            tmp.unlink(missing_ok=True)


def _keep_input(path: Path, dest: Path) -> None:
    if dest != path:
        shutil.copyfile(path, dest)


def _engine_jpeg(algorithm: str) -> Optional[Operation]:
    if algorithm == "jpegoptim":
        return Operation(
            algorithm, "jpeg", "jpegoptim", {"progressive": False}, STDOUT,
            lambda exe, src, out: [exe, "--all-normal", "--strip-all", "--stdout", str(src)],
        )
    if algorithm == "jpegtran":
        return Operation(
            algorithm, "jpeg", "jpegtran", {"progressive": True}, OUTFILE,
            lambda exe, src, out: [exe, "-copy", "none", "-optimize", "-progressive", "-outfile", str(out), str(src)],
        )
    if algorithm == "mozjpeg":
        return Operation(
            algorithm, "jpeg", "cjpeg", {"quality": 90}, OUTFILE,
            lambda exe, src, out: [exe, "-quality", "90", "-outfile", str(out), str(src)],
        )
    return None


def _engine_png(algorithm: str) -> Optional[Operation]:
    if algorithm == "advpng":
        return Operation(
            algorithm, "png", "advpng", {"optimization_level": 4}, INPLACE,
            lambda exe, src, out: [exe, "--recompress", "--shrink-insane", "--quiet", str(out)],
        )
    if algorithm == "optipng":
        return Operation(
            algorithm, "png", "optipng", {}, OUTFILE,
            lambda exe, src, out: [exe, "-quiet", "-clobber", "-out", str(out), str(src)],
        )
    if algorithm == "pngcrush":
        return Operation(
            algorithm, "png", "pngcrush", {"reduce": True}, OUTFILE,
            lambda exe, src, out: [exe, "-q", "-force", "-reduce", str(src), str(out)],
        )
    if algorithm == "pngout":
        # pngout exits with 2 when it cannot shrink the image any further
        return Operation(
            algorithm, "png", "pngout", {}, OUTFILE,
            lambda exe, src, out: [exe, str(src), str(out), "-y", "-q"],
            unchanged_codes=(2,),
        )
    if algorithm == "zopfli":
        return Operation(
            algorithm, "png", "zopflipng", {"transparent": True}, OUTFILE,
            lambda exe, src, out: [exe, "-y", "--lossy_transparent", str(src), str(out)],
        )
    return None


def _engine_svg(algorithm: str) -> Optional[Operation]:
    if algorithm == "svgo":
        return Operation(
            algorithm, "svg", "svgo", {}, OUTFILE,
            lambda exe, src, out: [exe, "--quiet", "--input", str(src), "--output", str(out)],
        )
    return None


def _engine_gif(algorithm: str) -> Optional[Operation]:
    if algorithm == "giflossy":
        return Operation(
            algorithm, "gif", "giflossy", {"interlaced": True, "optimization_level": 3, "optimize": 3}, OUTFILE,
            lambda exe, src, out: [exe, "--no-warnings", "--interlace", "-O3", "--output", str(out), str(src)],
        )
    if algorithm == "gifsicle":
        return Operation(
            algorithm, "gif", "gifsicle", {"interlaced": True, "optimization_level": 3}, OUTFILE,
            lambda exe, src, out: [exe, "--no-warnings", "--interlace", "-O3", "--output", str(out), str(src)],
        )
    return None


_ENGINES = {
    "jpeg": _engine_jpeg,
    "png": _engine_png,
    "svg": _engine_svg,
    "gif": _engine_gif,
}


def family_of(media_type: str) -> Optional[str]:
    for family, pattern in _FAMILY_PATTERNS:
        if pattern.search(media_type or ""):
            return family
    return None


def algorithms_for(media_type: str) -> list[str]:
    family = family_of(media_type)
    return list(ALGORITHMS[family]) if family else []


def get_operation(media_type: str, algorithm: str) -> Optional[Operation]:
    """Return the configured operation, or None when the combination is unsupported."""
    family = family_of(media_type)
    if family is None:
        return None
    return _ENGINES[family](algorithm)


def tool_status() -> dict[str, Optional[str]]:
    """Resolved executable per configured tool; None when it cannot be found."""
    return {name: shutil.which(binary) for name, binary in config.TOOL_PATHS.items()}
