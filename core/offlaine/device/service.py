"""
Device capability service.
Wires the probe, benchmark runner, tier classifier and recommendation engine
together and keeps the last complete result in the key-value store.
"""

import asyncio
from typing import Optional

from offlaine.device.benchmark import (
    BenchmarkRunner,
    ProgressCallback,
    ai_capability_score,
    aggregate_score,
)
from offlaine.device.probe import DeviceProbe, SystemDeviceProbe, detect_accelerator
from offlaine.device.recommendations import RecommendationEngine
from offlaine.device.schemas import (
    AcceleratorInfo,
    BenchmarkFailure,
    BenchmarkResult,
    BenchmarkStatus,
    ModelRecommendation,
)
from offlaine.device.tiers import classify_tier
from offlaine.errors import BenchmarkAborted, BenchmarkInProgress
from offlaine.models.schemas import PerformanceTier
from offlaine.storage.kv_store import KeyValueStore
from offlaine.storage.records import RecordStore
from offlaine.utils.logging import logger


class DeviceCapabilityService:
    """
    Run benchmarks one at a time and cache the outcome.

    A benchmark is all-or-nothing: the cache only ever holds a complete
    result. A run that fails leaves a failure marker instead, so callers can
    tell "never tested" from "tested and failed".
    """

    CACHE_KEY = "device_benchmark_cache"
    FAILURE_KEY = "device_benchmark_failure"

    def __init__(
        self,
        kv: KeyValueStore,
        probe: Optional[DeviceProbe] = None,
        runner: Optional[BenchmarkRunner] = None,
        engine: Optional[RecommendationEngine] = None,
    ):
        self.probe = probe or SystemDeviceProbe()
        self.runner = runner or BenchmarkRunner()
        self.engine = engine or RecommendationEngine()
        self._cache = RecordStore(kv, self.CACHE_KEY, BenchmarkResult)
        self._failure = RecordStore(kv, self.FAILURE_KEY, BenchmarkFailure)
        self._lock = asyncio.Lock()
        self._abort_requested = False

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_benchmark(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> BenchmarkResult:
        """
        Probe the device, run the full battery, classify and recommend.

        Raises:
            BenchmarkInProgress: Another run has not finished yet
            BenchmarkAborted: The run was abandoned; nothing is persisted
        """
        if self._lock.locked():
            raise BenchmarkInProgress("a benchmark is already running")

        async with self._lock:
            logger.info("Starting device benchmark")
            self._abort_requested = False
            try:
                facts = await self.probe.get_facts()
                # runner.run() starts with a fresh abort flag
                if self._abort_requested:
                    raise BenchmarkAborted("benchmark abandoned before completion")
                accelerator = detect_accelerator(facts.identifiers)
                tests = await self.runner.run(accelerator, on_progress)

                benchmark_score = aggregate_score(tests)
                ai_score = ai_capability_score(tests, accelerator)
                tier = classify_tier(benchmark_score, facts.total_memory_mb, facts.cpu_cores)

                result = BenchmarkResult(
                    facts=facts,
                    accelerator=accelerator,
                    tests=tests,
                    benchmark_score=round(benchmark_score),
                    ai_score=ai_score,
                    performance_tier=tier,
                    recommendations=self.engine.recommend(tier, ai_score, accelerator),
                    degraded=facts.degraded or any(t.degraded for t in tests),
                )
            except (BenchmarkAborted, asyncio.CancelledError):
                logger.warning("Device benchmark abandoned, nothing saved")
                raise
            except Exception as e:
                logger.error(f"Device benchmark failed: {e}")
                await self._failure.set(BenchmarkFailure(error=str(e)))
                raise

            await self._cache.set(result)
            await self._failure.delete()

        logger.info(
            f"Device benchmark finished: score {result.benchmark_score}, "
            f"AI {result.ai_score}, tier {result.performance_tier.value}"
        )
        return result

    def abort(self) -> None:
        """Abandon a running benchmark."""
        if self.is_running:
            self._abort_requested = True
            self.runner.abort()

    async def get_cached(self) -> Optional[BenchmarkResult]:
        return await self._cache.get()

    async def clear_cache(self) -> None:
        await self._cache.delete()
        await self._failure.delete()

    async def status(self) -> BenchmarkStatus:
        if self.is_running:
            return BenchmarkStatus(state="running")

        cached = await self._cache.get()
        failure = await self._failure.get()

        if failure and (cached is None or failure.failed_at > cached.benchmarked_at):
            return BenchmarkStatus(
                state="failed", failed_at=failure.failed_at, error=failure.error
            )
        if cached:
            return BenchmarkStatus(state="completed", benchmarked_at=cached.benchmarked_at)
        return BenchmarkStatus(state="never_run")

    def recommend(
        self,
        tier: PerformanceTier,
        ai_score: float,
        accelerator: Optional[AcceleratorInfo] = None,
    ) -> list[ModelRecommendation]:
        return self.engine.recommend(tier, ai_score, accelerator or AcceleratorInfo())
