"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture()
def destination(tmp_path: Path) -> Path:
    """Local destination path for a download (parent does not exist yet)."""
    return tmp_path / "local" / "f2"


@pytest.fixture()
def payload() -> bytes:
    """10000 bytes of patterned test data."""
    return bytes((i * 7 + i // 256) % 256 for i in range(10000))
