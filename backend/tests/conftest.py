"""Pytest configuration: make ``emage`` importable and provide shared fixtures.

Native optimizers are never called in the suite; tests swap in fake
operations through ``fake_engines`` instead.
"""

import os
import sys
from pathlib import Path

import pytest

# backend/ = parent directory of this tests/ folder
BACKEND_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from emage import config as app_config  # noqa: E402
from emage import db  # noqa: E402
from emage.compression import engines, pipeline  # noqa: E402
from emage.compression.models import ImageFile  # noqa: E402


class FakeOperation:
    """Stands in for a native optimizer: rewrites the file to ``new_size`` bytes or raises ``error``."""

    def __init__(self, new_size=None, error=None, delete=False, on_run=None):
        self.new_size = new_size
        self.error = error
        self.delete = delete
        self.on_run = on_run
        self.calls = []

    def run(self, path, out_dir, timeout=None):
        path = Path(path)
        self.calls.append(path)
        if self.on_run is not None:
            self.on_run(path)
        if self.error is not None:
            raise self.error
        dest = Path(out_dir) / path.name
        if self.delete:
            dest.unlink()
        elif self.new_size is not None:
            dest.write_bytes(b"x" * self.new_size)
        return dest


@pytest.fixture
def fake_engines(monkeypatch):
    """Install fake operations by algorithm name; names not in the table use the real selector."""
    table = {}
    real_get_operation = engines.get_operation

    def _get_operation(media_type, algorithm):
        if algorithm in table:
            return table[algorithm]
        return real_get_operation(media_type, algorithm)

    monkeypatch.setattr(pipeline, "get_operation", _get_operation)
    return table


@pytest.fixture
def make_image(tmp_path):
    def _make(name="photo.jpg", size=1000, media_type=None):
        path = tmp_path / name
        path.write_bytes(b"\xff" * size)
        return ImageFile.from_path(path, media_type=media_type)

    return _make


@pytest.fixture
def history_db(tmp_path, monkeypatch):
    """Point the run history at a fresh SQLite file."""
    monkeypatch.setattr(app_config, "DATABASE_URL", f"sqlite:///{tmp_path / 'history.db'}")
    db.reset_engine()
    db.init_db()
    yield db
    db.reset_engine()
