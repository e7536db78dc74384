"""
Resource usage monitoring.

Samples CPU, memory, battery and temperature at a fixed interval while a
session is active. Samples go into a bounded ring buffer; the buffer is saved
to the key-value store when a session stops.
"""

import asyncio
import statistics
import uuid
from datetime import datetime
from typing import Callable, Generic, Iterator, Optional, TypeVar

import psutil
from pydantic import BaseModel

from offlaine.config import MONITOR_HISTORY_CAPACITY, MONITOR_INTERVAL_SECONDS
from offlaine.device.schemas import (
    MonitoringSession,
    PerformanceReport,
    ResourceThresholds,
    ResourceTrends,
    ResourceUsage,
    SessionMetrics,
)
from offlaine.storage.kv_store import KeyValueStore
from offlaine.storage.records import RecordStore
from offlaine.utils.logging import logger

T = TypeVar("T")
MB = 1024 * 1024

UsageListener = Callable[[ResourceUsage], None]
Sampler = Callable[[], ResourceUsage]


class RingBuffer(Generic[T]):
    """
    Fixed-capacity FIFO. Appending to a full buffer overwrites the oldest item.

    Invariant: ``len(buffer) <= capacity`` at all times.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: list[Optional[T]] = [None] * capacity
        self._start = 0
        self._size = 0

    def append(self, item: T) -> None:
        end = (self._start + self._size) % self.capacity
        self._items[end] = item
        if self._size < self.capacity:
            self._size += 1
        else:
            self._start = (self._start + 1) % self.capacity

    def extend(self, items) -> None:
        for item in items:
            self.append(item)

    def clear(self) -> None:
        self._items = [None] * self.capacity
        self._start = 0
        self._size = 0

    def latest(self) -> Optional[T]:
        if self._size == 0:
            return None
        return self._items[(self._start + self._size - 1) % self.capacity]

    def to_list(self, limit: Optional[int] = None) -> list[T]:
        """Oldest first; with limit, only the newest ``limit`` items."""
        items = list(self)
        if limit is not None:
            return items[-limit:] if limit > 0 else []
        return items

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[T]:
        for i in range(self._size):
            yield self._items[(self._start + i) % self.capacity]


class ResourceHistory(BaseModel):
    samples: list[ResourceUsage] = []


def sample_system() -> ResourceUsage:
    """One reading of the host's resource usage. Unreadable sensors stay None."""
    vm = psutil.virtual_memory()

    battery_level = None
    try:
        battery = psutil.sensors_battery()
        if battery is not None:
            battery_level = float(battery.percent)
    except (AttributeError, NotImplementedError, OSError) as e:
        logger.debug(f"Battery unavailable: {e}")

    temperature = None
    try:
        temps = psutil.sensors_temperatures() if hasattr(psutil, "sensors_temperatures") else {}
        readings = [entry.current for entries in temps.values() for entry in entries]
        if readings:
            temperature = round(max(readings), 1)
    except (AttributeError, NotImplementedError, OSError) as e:
        logger.debug(f"Temperature unavailable: {e}")

    return ResourceUsage(
        cpu_usage=psutil.cpu_percent(interval=None),
        memory_usage_mb=round((vm.total - vm.available) / MB, 1),
        total_memory_mb=round(vm.total / MB, 1),
        battery_level=battery_level,
        temperature=temperature,
    )


def analyze_trend(values: list[float], reverse: bool = False) -> str:
    """
    Compare the mean of the second half against the first.

    A change counts once it exceeds 10% of the first-half mean or 5 units,
    whichever is larger. With ``reverse`` the labels are improving/declining.
    """
    if len(values) < 5:
        return "stable"

    half = len(values) // 2
    first_avg = statistics.mean(values[:half])
    second_avg = statistics.mean(values[half:])
    threshold = max(abs(first_avg) * 0.1, 5)

    if second_avg > first_avg + threshold:
        return "improving" if reverse else "increasing"
    if second_avg < first_avg - threshold:
        return "declining" if reverse else "decreasing"
    return "stable"


class ResourceMonitor:
    """Session-based resource sampler with threshold warnings."""

    HISTORY_KEY = "resource_usage_history"
    TREND_WINDOW = 50

    def __init__(
        self,
        kv: KeyValueStore,
        interval: float = MONITOR_INTERVAL_SECONDS,
        capacity: int = MONITOR_HISTORY_CAPACITY,
        thresholds: Optional[ResourceThresholds] = None,
        sampler: Optional[Sampler] = None,
    ):
        self.interval = interval
        self.thresholds = thresholds or ResourceThresholds()
        self.history: RingBuffer[ResourceUsage] = RingBuffer(capacity)
        self.session: Optional[MonitoringSession] = None

        self._sampler = sampler or sample_system
        self._records = RecordStore(kv, self.HISTORY_KEY, ResourceHistory)
        self._listeners: list[UsageListener] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def is_monitoring(self) -> bool:
        return self.session is not None

    async def load(self) -> int:
        """Restore saved history. Returns the number of samples loaded."""
        saved = await self._records.get()
        if saved is None:
            return 0
        self.history.clear()
        self.history.extend(saved.samples)
        return len(self.history)

    async def start(self, model_id: Optional[str] = None, task_type: Optional[str] = None) -> str:
        """Begin a session, ending any running one first. Returns the session id."""
        if self.session is not None:
            await self.stop()

        self.session = MonitoringSession(
            session_id=f"session_{uuid.uuid4().hex[:12]}",
            model_id=model_id,
            task_type=task_type,
        )
        self._task = asyncio.create_task(self._loop(), name="resource-monitor")
        logger.info(f"Started resource monitoring {self.session.session_id}")
        return self.session.session_id

    async def stop(self) -> Optional[SessionMetrics]:
        """End the session, save history and return its metrics."""
        if self.session is None:
            return None

        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        metrics = self.session_metrics(self.session.session_id)
        logger.info(f"Stopped resource monitoring {self.session.session_id}")
        self.session = None

        await self._records.set(ResourceHistory(samples=self.history.to_list()))
        return metrics

    async def capture(self) -> ResourceUsage:
        """Take one sample now and record it."""
        loop = asyncio.get_event_loop()
        usage = await loop.run_in_executor(None, self._sampler)

        previous = self.history.latest()
        updates = {}
        if self.session:
            updates.update(
                session_id=self.session.session_id,
                model_id=self.session.model_id,
                task_type=self.session.task_type,
            )
        if previous and previous.battery_level is not None and usage.battery_level is not None:
            hours = (usage.timestamp - previous.timestamp).total_seconds() / 3600
            if hours > 0:
                updates["battery_drain"] = round(
                    max(previous.battery_level - usage.battery_level, 0) / hours, 2
                )
        if updates:
            usage = usage.model_copy(update=updates)

        self.history.append(usage)
        self._notify(usage)
        self.check_thresholds(usage)
        return usage

    async def _loop(self) -> None:
        while True:
            try:
                await self.capture()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Resource sample failed: {e}")
            await asyncio.sleep(self.interval)

    # ─────────────────────────────────────────────────────────
    # LISTENERS & THRESHOLDS
    # ─────────────────────────────────────────────────────────

    def add_listener(self, callback: UsageListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, usage: ResourceUsage) -> None:
        for listener in list(self._listeners):
            try:
                listener(usage)
            except Exception as e:
                logger.error(f"Resource monitor listener error: {e}")

    def update_thresholds(self, **changes) -> ResourceThresholds:
        self.thresholds = self.thresholds.model_copy(update=changes)
        return self.thresholds

    def check_thresholds(self, usage: ResourceUsage) -> list[str]:
        t = self.thresholds
        warnings = []

        if usage.cpu_usage >= t.cpu_critical:
            warnings.append(f"Critical CPU usage: {usage.cpu_usage:.0f}%")
        elif usage.cpu_usage >= t.cpu_warning:
            warnings.append(f"High CPU usage: {usage.cpu_usage:.0f}%")

        if usage.memory_usage_mb >= t.memory_critical_mb:
            warnings.append(f"Critical memory usage: {usage.memory_usage_mb:.0f}MB")
        elif usage.memory_usage_mb >= t.memory_warning_mb:
            warnings.append(f"High memory usage: {usage.memory_usage_mb:.0f}MB")

        if usage.battery_level is not None and usage.battery_level <= t.battery_warning:
            warnings.append(f"Low battery: {usage.battery_level:.0f}%")

        if usage.temperature is not None and usage.temperature >= t.temperature_warning:
            warnings.append(f"High temperature: {usage.temperature:.0f}°C")

        if warnings:
            logger.warning(f"Resource warnings: {'; '.join(warnings)}")
        return warnings

    # ─────────────────────────────────────────────────────────
    # REPORTING
    # ─────────────────────────────────────────────────────────

    def current_usage(self) -> Optional[ResourceUsage]:
        return self.history.latest()

    def usage_history(self, limit: Optional[int] = None) -> list[ResourceUsage]:
        return self.history.to_list(limit)

    def usage_for_model(self, model_id: str, limit: Optional[int] = None) -> list[ResourceUsage]:
        samples = [u for u in self.history if u.model_id == model_id]
        return samples[-limit:] if limit else samples

    def session_metrics(self, session_id: str) -> SessionMetrics:
        samples = [u for u in self.history if u.session_id == session_id]
        if not samples:
            return SessionMetrics()

        cpu = [s.cpu_usage for s in samples]
        memory = [s.memory_usage_mb for s in samples]
        battery = [s.battery_level for s in samples if s.battery_level is not None]

        average_cpu = statistics.mean(cpu)
        average_memory = statistics.mean(memory)
        drain = battery[0] - battery[-1] if battery else 0.0
        duration = (samples[-1].timestamp - samples[0].timestamp).total_seconds()

        cpu_score = max(0, 100 - average_cpu)
        memory_score = max(0, 100 - average_memory / 50)  # 50MB per point
        battery_score = max(0, 100 - drain * 2)

        return SessionMetrics(
            average_cpu_usage=round(average_cpu),
            peak_cpu_usage=max(cpu),
            average_memory_mb=round(average_memory),
            peak_memory_mb=round(max(memory)),
            total_battery_drain=round(drain, 1),
            session_duration=round(duration),
            performance_score=round((cpu_score + memory_score + battery_score) / 3),
        )

    def recommendations(self) -> list[str]:
        current = self.current_usage()
        if current is None:
            return ["Start monitoring to get resource recommendations"]

        tips = []
        if current.cpu_usage > 80:
            tips.append("High CPU usage detected. Consider using a smaller model or closing other apps.")
        if current.memory_usage_mb > self.thresholds.memory_warning_mb:
            tips.append("High memory usage detected. Consider freeing up memory or using a smaller quantization.")
        if current.battery_level is not None and current.battery_level < 30 and current.battery_drain > 10:
            tips.append("High battery drain detected. Consider reducing model inference frequency.")
        if current.temperature is not None and current.temperature > 40:
            tips.append("Device temperature is high. Consider taking a break or reducing workload.")

        return tips or ["Resource usage is optimal. Continue current operation."]

    def trends(self) -> ResourceTrends:
        recent = self.history.to_list(self.TREND_WINDOW)
        battery = [u.battery_level for u in recent if u.battery_level is not None]
        return ResourceTrends(
            cpu=analyze_trend([u.cpu_usage for u in recent]),
            memory=analyze_trend([u.memory_usage_mb for u in recent]),
            battery=analyze_trend(battery, reverse=True),
        )

    def report(self) -> PerformanceReport:
        metrics = self.session_metrics(self.session.session_id) if self.session else None

        summary = "No monitoring data available"
        if metrics:
            summary = (
                f"Performance Score: {metrics.performance_score}/100. "
                f"Average CPU: {metrics.average_cpu_usage:.0f}%, "
                f"Memory: {metrics.average_memory_mb:.0f}MB, "
                f"Battery Drain: {metrics.total_battery_drain}%"
            )

        return PerformanceReport(
            summary=summary,
            metrics=metrics,
            recommendations=self.recommendations(),
            trends=self.trends(),
        )

    async def clear_history(self) -> None:
        self.history.clear()
        await self._records.delete()
