"""
Tests for the resource monitor.

These tests verify that:
- the ring buffer never holds more than its capacity
- threshold checks report warning and critical levels
- session metrics only use samples from that session
- trends and history persistence work from recorded samples
"""

from datetime import datetime, timedelta

import pytest

from offlaine.device.monitor import ResourceMonitor, RingBuffer, analyze_trend
from offlaine.device.schemas import ResourceThresholds, ResourceUsage

T0 = datetime(2024, 1, 1, 12, 0, 0)


def usage(**fields) -> ResourceUsage:
    fields.setdefault("cpu_usage", 10)
    fields.setdefault("memory_usage_mb", 500)
    return ResourceUsage(**fields)


@pytest.fixture
def monitor(kv):
    # Long interval: only explicit captures and the first loop tick sample
    return ResourceMonitor(kv, interval=3600, capacity=100, sampler=lambda: usage())


# ─────────────────────────────────────────────────────────────────────
# RING BUFFER
# ─────────────────────────────────────────────────────────────────────


class TestRingBuffer:
    """Bounded FIFO."""

    def test_overwrites_oldest(self):
        buffer = RingBuffer(3)
        for i in range(1, 6):
            buffer.append(i)
            assert len(buffer) <= 3

        assert buffer.to_list() == [3, 4, 5]
        assert buffer.latest() == 5

    def test_limit(self):
        buffer = RingBuffer(5)
        buffer.extend(range(4))

        assert buffer.to_list(2) == [2, 3]
        assert buffer.to_list(10) == [0, 1, 2, 3]
        assert buffer.to_list(0) == []

    def test_clear(self):
        buffer = RingBuffer(2)
        buffer.extend([1, 2, 3])
        buffer.clear()

        assert len(buffer) == 0
        assert buffer.latest() is None
        assert list(buffer) == []

    @pytest.mark.parametrize("capacity", [0, -1])
    def test_rejects_bad_capacity(self, capacity):
        with pytest.raises(ValueError):
            RingBuffer(capacity)

    @pytest.mark.asyncio
    async def test_monitor_history_is_bounded(self, kv):
        monitor = ResourceMonitor(kv, capacity=5, sampler=lambda: usage())
        for _ in range(12):
            await monitor.capture()
        assert len(monitor.usage_history()) == 5


# ─────────────────────────────────────────────────────────────────────
# THRESHOLDS
# ─────────────────────────────────────────────────────────────────────


class TestThresholds:
    """Warning levels."""

    def test_quiet_sample(self, monitor):
        assert monitor.check_thresholds(usage()) == []

    @pytest.mark.parametrize(
        "fields,expected",
        [
            ({"cpu_usage": 75}, "High CPU usage: 75%"),
            ({"cpu_usage": 95}, "Critical CPU usage: 95%"),
            ({"memory_usage_mb": 3500}, "High memory usage: 3500MB"),
            ({"memory_usage_mb": 4200}, "Critical memory usage: 4200MB"),
            ({"battery_level": 15}, "Low battery: 15%"),
            ({"temperature": 50}, "High temperature: 50°C"),
        ],
    )
    def test_warnings(self, monitor, fields, expected):
        assert monitor.check_thresholds(usage(**fields)) == [expected]

    def test_update_thresholds(self, monitor):
        updated = monitor.update_thresholds(cpu_warning=50)

        assert updated.cpu_warning == 50
        assert updated.cpu_critical == ResourceThresholds().cpu_critical
        assert monitor.check_thresholds(usage(cpu_usage=60)) == ["High CPU usage: 60%"]


# ─────────────────────────────────────────────────────────────────────
# SAMPLING & SESSIONS
# ─────────────────────────────────────────────────────────────────────


class TestSampling:
    """Captures, listeners and sessions."""

    @pytest.mark.asyncio
    async def test_battery_drain_per_hour(self, kv):
        samples = iter(
            [
                usage(timestamp=T0, battery_level=80),
                usage(timestamp=T0 + timedelta(minutes=6), battery_level=79),
            ]
        )
        monitor = ResourceMonitor(kv, sampler=lambda: next(samples))

        await monitor.capture()
        second = await monitor.capture()

        assert second.battery_drain == 10.0

    @pytest.mark.asyncio
    async def test_listeners(self, monitor):
        seen = []
        unsubscribe = monitor.add_listener(seen.append)

        await monitor.capture()
        unsubscribe()
        await monitor.capture()

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_capture(self, monitor):
        def broken(u):
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        await monitor.capture()
        assert monitor.current_usage() is not None

    @pytest.mark.asyncio
    async def test_session_tags_samples(self, monitor):
        session_id = await monitor.start(model_id="v/m", task_type="chat")
        assert monitor.is_monitoring

        await monitor.capture()
        await monitor.stop()

        assert not monitor.is_monitoring
        samples = monitor.usage_for_model("v/m")
        assert samples
        assert all(s.session_id == session_id for s in samples)
        assert all(s.task_type == "chat" for s in samples)

    @pytest.mark.asyncio
    async def test_stop_without_session(self, monitor):
        assert await monitor.stop() is None

    @pytest.mark.asyncio
    async def test_stop_persists_history(self, monitor, kv):
        await monitor.start()
        await monitor.capture()
        await monitor.stop()

        restored = ResourceMonitor(kv)
        assert await restored.load() == len(monitor.usage_history())
        assert (await kv.get("resource_usage_history"))["samples"]

    @pytest.mark.asyncio
    async def test_clear_history(self, monitor, kv):
        await monitor.start()
        await monitor.stop()
        await monitor.clear_history()

        assert monitor.usage_history() == []
        assert await kv.get("resource_usage_history") is None


class TestReporting:
    """Metrics, trends and recommendations from recorded samples."""

    def test_session_metrics_only_use_own_samples(self, monitor):
        monitor.history.extend(
            [
                usage(session_id="s1", timestamp=T0, cpu_usage=20, memory_usage_mb=1000, battery_level=90),
                usage(session_id="other", timestamp=T0, cpu_usage=99, memory_usage_mb=9000),
                usage(
                    session_id="s1",
                    timestamp=T0 + timedelta(seconds=60),
                    cpu_usage=40,
                    memory_usage_mb=2000,
                    battery_level=85,
                ),
            ]
        )

        metrics = monitor.session_metrics("s1")

        assert metrics.average_cpu_usage == 30
        assert metrics.peak_cpu_usage == 40
        assert metrics.average_memory_mb == 1500
        assert metrics.peak_memory_mb == 2000
        assert metrics.total_battery_drain == 5.0
        assert metrics.session_duration == 60
        # (70 + 70 + 90) / 3
        assert metrics.performance_score == 77

    def test_unknown_session_metrics(self, monitor):
        assert monitor.session_metrics("nope").performance_score == 100

    def test_trends(self, monitor):
        monitor.history.extend(
            [usage(cpu_usage=10, battery_level=90) for _ in range(5)]
            + [usage(cpu_usage=60, battery_level=50) for _ in range(5)]
        )

        trends = monitor.trends()

        assert trends.cpu == "increasing"
        assert trends.memory == "stable"
        assert trends.battery == "declining"

    @pytest.mark.parametrize(
        "values,expected",
        [
            ([1, 2, 3], "stable"),
            ([50, 50, 50, 52, 53, 54], "stable"),
            ([50, 50, 50, 30, 30, 30], "decreasing"),
        ],
    )
    def test_analyze_trend(self, values, expected):
        assert analyze_trend(values) == expected

    def test_recommendations(self, monitor):
        assert monitor.recommendations() == ["Start monitoring to get resource recommendations"]

        monitor.history.append(usage())
        assert monitor.recommendations() == [
            "Resource usage is optimal. Continue current operation."
        ]

        monitor.history.append(usage(cpu_usage=90, temperature=42))
        tips = monitor.recommendations()
        assert len(tips) == 2
        assert tips[0].startswith("High CPU usage")

    def test_report_without_session(self, monitor):
        report = monitor.report()
        assert report.summary == "No monitoring data available"
        assert report.metrics is None
