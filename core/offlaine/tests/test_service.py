"""
Tests for DeviceCapabilityService.

A scripted runner stands in for the benchmark battery so runs are instant
and can be held open to exercise the single-run guard and abort.
"""

import asyncio

import pytest

from offlaine.device.benchmark import BATTERY
from offlaine.device.probe import StaticDeviceProbe
from offlaine.device.schemas import AcceleratorKind, DeviceFacts
from offlaine.device.service import DeviceCapabilityService
from offlaine.errors import BenchmarkAborted, BenchmarkInProgress
from offlaine.models.schemas import PerformanceTier

from conftest import FAST_DEVICE, ScriptedRunner


class SlowProbe(StaticDeviceProbe):
    async def get_facts(self):
        await asyncio.sleep(0.2)
        return await super().get_facts()


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def service(kv, runner):
    return DeviceCapabilityService(kv, probe=StaticDeviceProbe(FAST_DEVICE), runner=runner)


class TestRunBenchmark:
    """Complete runs."""

    @pytest.mark.asyncio
    async def test_fast_device(self, service, kv):
        progress = []
        result = await service.run_benchmark(lambda f, name: progress.append(f))

        assert result.benchmark_score == 2000
        assert result.ai_score == 100
        assert result.performance_tier == PerformanceTier.HIGH
        assert result.accelerator.kind == AcceleratorKind.GPU
        assert len(result.tests) == len(BATTERY)
        assert {r.tier for r in result.recommendations} == {"light", "medium", "heavy"}
        assert progress[-1] == 1.0
        assert await kv.get("device_benchmark_cache") is not None

    @pytest.mark.asyncio
    async def test_slow_device_without_recommendations(self, kv):
        service = DeviceCapabilityService(
            kv, probe=StaticDeviceProbe(), runner=ScriptedRunner(score=500)
        )

        result = await service.run_benchmark()

        assert result.performance_tier == PerformanceTier.LOW
        assert result.ai_score == 25.0
        assert result.recommendations == []

    @pytest.mark.asyncio
    async def test_degraded_facts_flag_result(self, kv, runner):
        service = DeviceCapabilityService(
            kv, probe=StaticDeviceProbe(DeviceFacts(degraded=True)), runner=runner
        )
        result = await service.run_benchmark()
        assert result.degraded

    @pytest.mark.asyncio
    async def test_single_run_at_a_time(self, service, runner):
        runner.gate = asyncio.Event()
        first = asyncio.create_task(service.run_benchmark())
        await runner.started.wait()

        assert service.is_running
        assert (await service.status()).state == "running"
        with pytest.raises(BenchmarkInProgress):
            await service.run_benchmark()

        runner.gate.set()
        result = await first
        assert result.performance_tier == PerformanceTier.HIGH
        assert not service.is_running


class TestAbortAndFailure:
    """Nothing partial is ever cached."""

    @pytest.mark.asyncio
    async def test_abort_persists_nothing(self, service, runner, kv):
        runner.gate = asyncio.Event()
        task = asyncio.create_task(service.run_benchmark())
        await runner.started.wait()

        service.abort()

        with pytest.raises(BenchmarkAborted):
            await task
        assert await service.get_cached() is None
        assert await kv.get("device_benchmark_failure") is None
        assert (await service.status()).state == "never_run"

    @pytest.mark.asyncio
    async def test_abort_while_probing(self, kv, runner):
        service = DeviceCapabilityService(kv, probe=SlowProbe(FAST_DEVICE), runner=runner)
        task = asyncio.create_task(service.run_benchmark())
        await asyncio.sleep(0.05)

        service.abort()

        with pytest.raises(BenchmarkAborted):
            await task
        assert not runner.started.is_set()
        assert await service.get_cached() is None

    @pytest.mark.asyncio
    async def test_abort_keeps_previous_result(self, service, runner):
        previous = await service.run_benchmark()

        runner.gate = asyncio.Event()
        runner.started.clear()
        task = asyncio.create_task(service.run_benchmark())
        await runner.started.wait()
        service.abort()
        with pytest.raises(BenchmarkAborted):
            await task

        cached = await service.get_cached()
        assert cached.benchmarked_at == previous.benchmarked_at

    @pytest.mark.asyncio
    async def test_failure_leaves_marker(self, service, runner):
        await service.run_benchmark()
        runner.error = RuntimeError("probe crashed")

        with pytest.raises(RuntimeError):
            await service.run_benchmark()

        status = await service.status()
        assert status.state == "failed"
        assert status.error == "probe crashed"
        assert await service.get_cached() is not None

    @pytest.mark.asyncio
    async def test_success_clears_failure(self, service, runner):
        runner.error = RuntimeError("probe crashed")
        with pytest.raises(RuntimeError):
            await service.run_benchmark()

        runner.error = None
        await service.run_benchmark()

        assert (await service.status()).state == "completed"


class TestCacheAndRecommend:
    """Cache management and ad-hoc recommendations."""

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, service):
        assert (await service.status()).state == "never_run"

        result = await service.run_benchmark()
        status = await service.status()
        assert status.state == "completed"
        assert status.benchmarked_at == result.benchmarked_at

        await service.clear_cache()
        assert (await service.status()).state == "never_run"

    @pytest.mark.asyncio
    async def test_cached_result_roundtrips(self, service):
        result = await service.run_benchmark()
        assert await service.get_cached() == result

    def test_recommend_without_accelerator(self, service):
        results = service.recommend(PerformanceTier.LOW, 60)
        assert results
        assert {r.quantization for r in results} == {"int8"}
