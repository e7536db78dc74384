"""Shared service instances for API routes."""

import asyncio
from pathlib import Path
from typing import Optional

from offlaine.config import DATA_DIR, MODELS_DIR, STATE_FILE
from offlaine.device.monitor import ResourceMonitor
from offlaine.device.schemas import BenchmarkResult
from offlaine.device.service import DeviceCapabilityService
from offlaine.errors import BenchmarkInProgress
from offlaine.models.analytics import StorageAnalyticsEngine
from offlaine.models.catalog import CatalogClient, HuggingFaceCatalog
from offlaine.models.downloader import ModelDownloadManager
from offlaine.models.fetcher import Fetcher, HttpFetcher
from offlaine.models.personalization import PersonalizationStore
from offlaine.storage.artifacts import ArtifactFileStore
from offlaine.storage.kv_store import JsonFileKeyValueStore, KeyValueStore
from offlaine.utils.logging import logger


class Services:
    """Every component the API needs, built once and wired together."""

    def __init__(
        self,
        kv: KeyValueStore,
        artifacts: ArtifactFileStore,
        fetcher: Fetcher,
        catalog: CatalogClient,
        device: Optional[DeviceCapabilityService] = None,
        monitor: Optional[ResourceMonitor] = None,
    ):
        self.kv = kv
        self.artifacts = artifacts
        self.catalog = catalog
        self.personalization = PersonalizationStore(kv)
        self.manager = ModelDownloadManager(kv, artifacts, fetcher, self.personalization)
        self.analytics = StorageAnalyticsEngine(artifacts, kv, self.manager)
        self.device = device or DeviceCapabilityService(kv)
        self.monitor = monitor or ResourceMonitor(kv)

        self.benchmark_task: Optional[asyncio.Task] = None
        self.benchmark_progress: tuple[float, str] = (0.0, "")

    @classmethod
    def create(cls, data_dir: Path = DATA_DIR) -> "Services":
        """Production wiring: JSON state file, local disk, httpx, Hugging Face."""
        data_dir = Path(data_dir)
        kv = JsonFileKeyValueStore(data_dir / STATE_FILE.name)
        return cls(
            kv=kv,
            artifacts=ArtifactFileStore(data_dir / MODELS_DIR.name),
            fetcher=HttpFetcher(),
            catalog=HuggingFaceCatalog(kv),
        )

    async def initialize(self) -> None:
        await self.manager.recover()
        await self.monitor.load()
        await self.analytics.recompute()
        logger.info("Services initialized")

    async def shutdown(self) -> None:
        self.device.abort()
        if self.benchmark_task:
            await asyncio.gather(self.benchmark_task, return_exceptions=True)
        await self.monitor.stop()
        await self.manager.shutdown()

    def start_benchmark(self) -> asyncio.Task:
        """Run the benchmark in the background; the caller polls its status."""
        if self.device.is_running or (self.benchmark_task and not self.benchmark_task.done()):
            raise BenchmarkInProgress("a benchmark is already running")

        self.benchmark_progress = (0.0, "")
        self.benchmark_task = asyncio.create_task(self._benchmark(), name="device-benchmark")
        return self.benchmark_task

    async def _benchmark(self) -> Optional[BenchmarkResult]:
        def on_progress(fraction: float, test_name: str) -> None:
            self.benchmark_progress = (fraction, test_name)

        try:
            return await self.device.run_benchmark(on_progress)
        except Exception as e:
            # Outcome is recorded by the capability service
            logger.warning(f"Background benchmark ended without a result: {e}")
            return None


services: Optional[Services] = None


async def get_services() -> Services:
    """Get or create the services instance."""
    global services
    if services is None:
        services = Services.create()
        await services.initialize()
    return services
