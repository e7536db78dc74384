"""Shared fixtures: in-memory state, temp model directory, scripted fetcher and benchmark runner."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

import pytest

from offlaine.device.benchmark import BATTERY
from offlaine.device.schemas import BenchmarkTestResult, DeviceFacts
from offlaine.errors import BenchmarkAborted, TransportFailure
from offlaine.models.downloader import ModelDownloadManager
from offlaine.models.fetcher import FetchResult, Fetcher
from offlaine.models.personalization import PersonalizationStore
from offlaine.models.schemas import (
    MB,
    ArtifactDescriptor,
    ArtifactFile,
    InstalledArtifact,
)
from offlaine.storage.artifacts import ArtifactFileStore
from offlaine.storage.filesystem import LocalFileSystem
from offlaine.storage.kv_store import InMemoryKeyValueStore


class LimitedFileSystem(LocalFileSystem):
    """Local disk with a configurable amount of free space."""

    def __init__(self, free: int = 10 * 1024 * MB):
        self.free = free

    async def free_space(self, path: Path) -> int:
        # Suspend like the thread-backed implementation does
        await asyncio.sleep(0)
        return self.free


class FakeFetcher(Fetcher):
    """
    Serves in-memory payloads in small chunks.

    With ``hold_at`` set, a fetch stops sending once that many bytes are on
    disk and waits until ``release()`` is called or the stop event is set.
    """

    def __init__(self, supports_range: bool = True, chunk_size: int = 100):
        self.supports_range = supports_range
        self.chunk_size = chunk_size
        self.payloads: dict[str, bytes] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, int]] = []
        self.hold_at: Optional[int] = None
        self.holding = asyncio.Event()
        self._released = asyncio.Event()

    def serve(self, url: str, data: bytes) -> None:
        self.payloads[url] = data

    def fail(self, url: str, error: Exception) -> None:
        self.errors[url] = error

    def release(self) -> None:
        self.hold_at = None
        self._released.set()

    async def fetch(self, url, dest_path, on_chunk=None, offset=0, stop_event=None):
        self.calls.append((url, offset))
        if url in self.errors:
            raise self.errors[url]
        if url not in self.payloads:
            raise TransportFailure(f"GET {url} returned 404", status_code=404)

        data = self.payloads[url]
        if not self.supports_range:
            offset = 0
        total = len(data)
        written = offset

        with open(dest_path, "ab" if offset else "wb") as f:
            while written < total:
                if self.hold_at is not None and written >= self.hold_at:
                    self.holding.set()
                    while not self._released.is_set() and not (stop_event and stop_event.is_set()):
                        await asyncio.sleep(0.001)
                if stop_event and stop_event.is_set():
                    return FetchResult(written, total, False, offset)

                chunk = data[written : written + self.chunk_size]
                f.write(chunk)
                f.flush()
                written += len(chunk)
                if on_chunk:
                    on_chunk(written, total)
                await asyncio.sleep(0)

        return FetchResult(written, total, True, offset)


class ScriptedRunner:
    """Benchmark runner that scores every test the same, optionally waiting on a gate first."""

    def __init__(self, score: float = 2000, error: Optional[Exception] = None):
        self.score = score
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self._aborted = False

    def abort(self) -> None:
        self._aborted = True
        if self.gate:
            self.gate.set()

    async def run(self, accelerator, on_progress=None):
        self._aborted = False
        self.started.set()
        if self.gate:
            await self.gate.wait()
        if self._aborted:
            raise BenchmarkAborted("aborted")
        if self.error:
            raise self.error

        results = []
        for i, test in enumerate(BATTERY):
            results.append(
                BenchmarkTestResult(
                    id=test.id, name=test.name, category=test.category, score=self.score
                )
            )
            if on_progress:
                on_progress((i + 1) / len(BATTERY), test.name)
        return results


FAST_DEVICE = DeviceFacts(
    device_name="Workstation",
    total_memory_mb=16000,
    cpu_cores=8,
    identifiers=["NVIDIA GeForce RTX 3080"],
)


def make_descriptor(
    model_id: str = "vendor/tiny-model",
    size: int = 1000,
    name: Optional[str] = None,
    sha256: Optional[str] = None,
) -> ArtifactDescriptor:
    url = f"https://models.example/{model_id}/model.gguf"
    return ArtifactDescriptor(
        id=model_id,
        name=name or model_id.split("/")[-1],
        size_mb=size / MB,
        download_url=url,
        files=(ArtifactFile(filename="model.gguf", url=url, size_bytes=size, sha256=sha256),),
    )


async def install_directly(
    artifacts: ArtifactFileStore,
    descriptor: ArtifactDescriptor,
    installed_at: Optional[datetime] = None,
) -> InstalledArtifact:
    """Put an artifact on disk without going through a transfer."""
    model_dir = await artifacts.prepare(descriptor.id)
    for f in descriptor.payload_files():
        (model_dir / f.filename).write_bytes(b"x" * (f.size_bytes or 10))

    installed = InstalledArtifact(
        model=descriptor,
        installed_at=installed_at or datetime.now(),
        files=[f.filename for f in descriptor.payload_files()],
    )
    await artifacts.write_metadata(installed)
    return installed


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def fs():
    return LimitedFileSystem()


@pytest.fixture
def artifacts(tmp_path, fs):
    return ArtifactFileStore(tmp_path / "models", fs)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def personalization(kv):
    return PersonalizationStore(kv)


@pytest.fixture
def manager(kv, artifacts, fetcher, personalization):
    return ModelDownloadManager(kv, artifacts, fetcher, personalization)


@pytest.fixture
def descriptor(fetcher):
    d = make_descriptor()
    fetcher.serve(d.download_url, b"a" * 1000)
    return d
