from __future__ import annotations

import io
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Tuple

import pytest
from PIL import Image

from returns_intake.orchestrator.recordsdb import ReturnsDatabase
from returns_intake.storage.client import LocalObjectStorage


def make_image_bytes(
    size: Tuple[int, int] = (800, 600),
    color: Tuple[int, int, int] = (10, 120, 200),
    fmt: str = "JPEG",
) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def ticking_clock(start: datetime = datetime(2024, 3, 5, 22, 30, 15)) -> Callable[[], datetime]:
    """Clock advancing one second per call."""
    state = {"now": start}

    def _now() -> datetime:
        current = state["now"]
        state["now"] = current + timedelta(seconds=1)
        return current

    return _now


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def db(tmp_path: Path) -> ReturnsDatabase:
    return ReturnsDatabase(str(tmp_path / "db" / "returns.sqlite3"))


@pytest.fixture
def storage(tmp_path: Path) -> LocalObjectStorage:
    return LocalObjectStorage(str(tmp_path / "storage"))
