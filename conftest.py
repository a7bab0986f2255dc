"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from nirload.config import DatabaseSettings
from nirload.database import create_target_engine
from nirload.transport import LocalFileTransfer

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine() -> AsyncEngine:
    """In-memory SQLite engine; StaticPool keeps one connection so temp tables stay visible."""
    test_engine = create_target_engine(DatabaseSettings(url=MEMORY_URL))
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def write_text_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write ``content`` to ``tmp_path/name`` and return the path."""

    def _write(name: str, content: str) -> Path:
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
        return p

    return _write


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    root = tmp_path / "remote"
    (root / "inbox").mkdir(parents=True)
    return root


@pytest.fixture
def transport(remote_root: Path) -> LocalFileTransfer:
    return LocalFileTransfer(remote_root)
