"""
Remote file transport.

FileTransferService is the interface the orchestrator and archive router
talk to. The package ships the LOCAL implementation (a directory tree,
e.g. a mounted share); SFTP / SMB sessions are supplied by the host
through register_transport().
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from nirload.config import TransportConfig
from nirload.errors import ConfigError, TransportError
from nirload.log import get_logger
from nirload.utils import matches_any, normalize_remote_path, split_patterns


@dataclass(frozen=True)
class RemoteFileInfo:
    name: str
    full_path: str
    size: int
    last_modified: datetime
    is_directory: bool = False


class FileTransferService(ABC):
    """Async file operations against the remote source / archive store."""

    @abstractmethod
    async def test_connection(self) -> bool: ...

    @abstractmethod
    async def list_files(self, path: str, pattern: str = "*", recursive: bool = False) -> List[RemoteFileInfo]: ...

    @abstractmethod
    async def download(self, remote_path: str, local_dir: Path | str) -> Path: ...

    @abstractmethod
    async def move(self, src: str, dst: str) -> None: ...

    @abstractmethod
    async def copy(self, src: str, dst: str) -> None: ...

    @abstractmethod
    async def delete(self, path: str) -> None: ...

    @abstractmethod
    async def exists(self, path: str) -> bool: ...

    @abstractmethod
    async def create_directory(self, path: str) -> None: ...

    @abstractmethod
    async def write_text(self, path: str, content: str) -> None: ...


class LocalFileTransfer(FileTransferService):
    """Transport over a local (or mounted) directory tree.

    Remote paths are POSIX-style and relative to ``root``. Blocking
    filesystem calls run in worker threads.
    """

    def __init__(self, root: Path | str = ".", logger: Optional[logging.Logger] = None):
        self.root = Path(root)
        self.logger = logger or get_logger(__name__)

    def _resolve(self, path: str) -> Path:
        rel = normalize_remote_path(path)
        return self.root / rel if rel else self.root

    async def _call(self, what: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except OSError as e:
            raise TransportError(f"{what} failed: {e}") from e

    async def test_connection(self) -> bool:
        ok = await asyncio.to_thread(self.root.is_dir)
        if not ok:
            self.logger.error("Transport root is not a directory: %s", self.root)
        return ok

    async def list_files(self, path: str, pattern: str = "*", recursive: bool = False) -> List[RemoteFileInfo]:
        base = self._resolve(path)
        patterns = split_patterns(pattern)

        def _list() -> List[RemoteFileInfo]:
            if not base.is_dir():
                raise FileNotFoundError(f"Directory not found: {base}")
            entries = base.rglob("*") if recursive else base.iterdir()
            out: List[RemoteFileInfo] = []
            for p in sorted(entries):
                if not p.is_file() or not matches_any(p.name, patterns):
                    continue
                st = p.stat()
                rel = p.relative_to(self.root).as_posix()
                out.append(RemoteFileInfo(p.name, rel, st.st_size, datetime.fromtimestamp(st.st_mtime)))
            return out

        return await self._call(f"List {path}", _list)

    async def download(self, remote_path: str, local_dir: Path | str) -> Path:
        src = self._resolve(remote_path)
        dst = Path(local_dir) / src.name

        def _download() -> Path:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
            return dst

        result = await self._call(f"Download {remote_path}", _download)
        self.logger.info("Downloaded %s -> %s", remote_path, result)
        return result

    async def move(self, src: str, dst: str) -> None:
        s, d = self._resolve(src), self._resolve(dst)

        def _move() -> None:
            d.parent.mkdir(parents=True, exist_ok=True)
            # replace semantics when the caller allows overwrite
            s.replace(d)

        await self._call(f"Move {src} -> {dst}", _move)

    async def copy(self, src: str, dst: str) -> None:
        s, d = self._resolve(src), self._resolve(dst)

        def _copy() -> None:
            d.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(s, d)

        await self._call(f"Copy {src} -> {dst}", _copy)

    async def delete(self, path: str) -> None:
        await self._call(f"Delete {path}", self._resolve(path).unlink)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).exists)

    async def create_directory(self, path: str) -> None:
        target = self._resolve(path)
        await self._call(f"Create directory {path}", lambda: target.mkdir(parents=True, exist_ok=True))

    async def write_text(self, path: str, content: str) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await self._call(f"Write {path}", _write)


# -----------------------------
# Factory
# -----------------------------

TransportFactory = Callable[[TransportConfig], FileTransferService]

_REGISTRY: Dict[str, TransportFactory] = {
    "LOCAL": lambda cfg: LocalFileTransfer(cfg.root),
}


def register_transport(mode: str, factory: TransportFactory) -> None:
    """Make a transport implementation selectable by ``transport.mode``."""
    _REGISTRY[mode.upper()] = factory


class FileTransferFactory:
    @staticmethod
    def available_modes() -> List[str]:
        return sorted(_REGISTRY)

    @staticmethod
    def create(config: TransportConfig) -> FileTransferService:
        mode = (config.mode or "").upper()
        factory = _REGISTRY.get(mode)
        if factory is None:
            raise ConfigError(
                f"Unknown transport mode '{config.mode}'. Available: {', '.join(FileTransferFactory.available_modes())}"
            )
        return factory(config)


__all__ = [
    "RemoteFileInfo",
    "FileTransferService",
    "LocalFileTransfer",
    "FileTransferFactory",
    "register_transport",
]
