"""
Filesystem collaborator for bulk binary artifacts.
Blocking calls run in the default executor so the event loop keeps streaming.
"""

import asyncio
import hashlib
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass
class FileInfo:
    """Stat result for a file or directory."""

    path: Path
    name: str
    size: int  # bytes; recursive total for directories
    is_dir: bool
    mtime: datetime


class FileSystem(ABC):
    """Async filesystem operations used by the artifact store."""

    @abstractmethod
    async def exists(self, path: Path) -> bool: ...

    @abstractmethod
    async def mkdir(self, path: Path) -> None: ...

    @abstractmethod
    async def read_dir(self, path: Path) -> list[FileInfo]: ...

    @abstractmethod
    async def stat(self, path: Path) -> FileInfo: ...

    @abstractmethod
    async def unlink(self, path: Path) -> None:
        """Remove a file, or a directory with everything below it."""

    @abstractmethod
    async def write_file(self, path: Path, content: str) -> None: ...

    @abstractmethod
    async def read_file(self, path: Path) -> str: ...

    @abstractmethod
    async def rename(self, src: Path, dst: Path) -> None: ...

    @abstractmethod
    async def free_space(self, path: Path) -> int:
        """Free bytes on the volume holding path."""

    @abstractmethod
    async def sha256(self, path: Path) -> str:
        """Hex SHA-256 digest of a file."""


class LocalFileSystem(FileSystem):
    """FileSystem backed by the local disk."""

    async def exists(self, path: Path) -> bool:
        return await asyncio.to_thread(Path(path).exists)

    async def mkdir(self, path: Path) -> None:
        await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)

    async def read_dir(self, path: Path) -> list[FileInfo]:
        def do_read():
            return [self._stat(child) for child in sorted(Path(path).iterdir())]

        return await asyncio.to_thread(do_read)

    async def stat(self, path: Path) -> FileInfo:
        return await asyncio.to_thread(self._stat, Path(path))

    async def unlink(self, path: Path) -> None:
        def do_unlink():
            p = Path(path)
            if p.is_dir() and not p.is_symlink():
                shutil.rmtree(p)
            elif p.exists() or p.is_symlink():
                p.unlink()

        await asyncio.to_thread(do_unlink)

    async def write_file(self, path: Path, content: str) -> None:
        def do_write():
            p = Path(path)
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(content, encoding="utf-8")

        await asyncio.to_thread(do_write)

    async def read_file(self, path: Path) -> str:
        return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")

    async def rename(self, src: Path, dst: Path) -> None:
        await asyncio.to_thread(os.replace, src, dst)

    async def free_space(self, path: Path) -> int:
        def do_free():
            p = Path(path)
            # Walk up to the first existing ancestor; the target may not exist yet
            while not p.exists() and p != p.parent:
                p = p.parent
            return shutil.disk_usage(p).free

        return await asyncio.to_thread(do_free)

    async def sha256(self, path: Path) -> str:
        def do_hash():
            digest = hashlib.sha256()
            with open(path, "rb") as f:
                for block in iter(lambda: f.read(1024 * 1024), b""):
                    digest.update(block)
            return digest.hexdigest()

        return await asyncio.to_thread(do_hash)

    def _stat(self, path: Path) -> FileInfo:
        st = path.stat()
        if path.is_dir():
            size = sum(f.stat().st_size for f in path.rglob("*") if f.is_file())
        else:
            size = st.st_size

        return FileInfo(
            path=path,
            name=path.name,
            size=size,
            is_dir=path.is_dir(),
            mtime=datetime.fromtimestamp(st.st_mtime),
        )
