"""
Synthetic device benchmark.

A fixed, ordered battery of bounded workloads. Every test reports a score on a
common points scale where 2000 marks a fast device; the AI capability score
works on the same scores normalized to 0-100.
"""

import asyncio
import math
import os
import statistics
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import numpy as np

from offlaine.config import THERMAL_SAMPLE_INTERVAL, THERMAL_WINDOW_SECONDS
from offlaine.device.schemas import AcceleratorInfo, BenchmarkTestResult
from offlaine.errors import BenchmarkAborted
from offlaine.utils.logging import logger

ProgressCallback = Callable[[float, str], None]  # (fraction_complete, test_name)
TestOutcome = tuple[float, dict[str, Any]]

REFERENCE_SCORE = 2000
DEGRADED_SCORE = 500

BASELINE_TESTS = (
    "cpu_single",
    "cpu_multi",
    "memory_bandwidth",
    "memory_latency",
    "storage_sequential",
)
MATRIX_TESTS = ("matrix_small", "matrix_medium", "matrix_large")

AI_WEIGHTS = {
    "matrix": 0.35,
    "memory_bandwidth": 0.25,
    "quantization": 0.25,
    "thermal": 0.15,
}

PRECISIONS = ("fp32", "fp16", "int8", "int4")


@dataclass(frozen=True)
class BenchmarkTest:
    id: str
    name: str
    category: str
    description: str


BATTERY: list[BenchmarkTest] = [
    BenchmarkTest("cpu_single", "CPU Single-Core", "cpu", "Single-threaded arithmetic"),
    BenchmarkTest("cpu_multi", "CPU Multi-Core", "cpu", "Vector math on every core"),
    BenchmarkTest("memory_bandwidth", "Memory Bandwidth", "memory", "Large sequential copies"),
    BenchmarkTest("memory_latency", "Memory Latency", "memory", "Random gathers over a large array"),
    BenchmarkTest("storage_sequential", "Storage Sequential", "storage", "Sequential write and read"),
    BenchmarkTest("matrix_small", "Matrix Multiply (small)", "matrix", "64x64 float32 matmul"),
    BenchmarkTest("matrix_medium", "Matrix Multiply (medium)", "matrix", "256x256 float32 matmul"),
    BenchmarkTest("matrix_large", "Matrix Multiply (large)", "matrix", "512x512 float32 matmul"),
    BenchmarkTest("quantization", "Quantization Precision", "ai", "fp32/fp16/int8/int4 throughput"),
    BenchmarkTest("thermal", "Thermal Sustain", "thermal", "Fixed workload sampled over time"),
]


def normalize(score: float) -> float:
    """Points score to 0-100."""
    return min(max(score, 0) / REFERENCE_SCORE, 1) * 100


def aggregate_score(results: list[BenchmarkTestResult]) -> float:
    """Mean of the five baseline test scores."""
    by_id = {r.id: r.score for r in results}
    return statistics.mean(by_id.get(t, DEGRADED_SCORE) for t in BASELINE_TESTS)


def ai_capability_score(
    results: list[BenchmarkTestResult], accelerator: AcceleratorInfo
) -> float:
    """
    Weighted blend of matrix, memory bandwidth, quantization breadth and
    thermal sustain, plus the accelerator bonus, clamped to [0, 100].
    """
    by_id = {r.id: r.score for r in results}

    matrix = statistics.mean(normalize(by_id.get(t, DEGRADED_SCORE)) for t in MATRIX_TESTS)
    bandwidth = normalize(by_id.get("memory_bandwidth", DEGRADED_SCORE))
    quantization = normalize(by_id.get("quantization", DEGRADED_SCORE))
    thermal = normalize(by_id.get("thermal", DEGRADED_SCORE))

    score = (
        matrix * AI_WEIGHTS["matrix"]
        + bandwidth * AI_WEIGHTS["memory_bandwidth"]
        + quantization * AI_WEIGHTS["quantization"]
        + thermal * AI_WEIGHTS["thermal"]
        + accelerator.bonus
    )
    return round(min(max(score, 0), 100), 1)


def _timed(fn: Callable[[], Any], repeats: int) -> float:
    """Best wall time of fn over repeats, in seconds."""
    best = math.inf
    for _ in range(repeats):
        start = time.perf_counter()
        fn()
        best = min(best, time.perf_counter() - start)
    return max(best, 1e-6)


def _matmul_gflops(size: int, repeats: int, dtype=np.float32) -> float:
    rng = np.random.default_rng(size)
    a = rng.standard_normal((size, size)).astype(dtype)
    b = rng.standard_normal((size, size)).astype(dtype)
    elapsed = _timed(lambda: a @ b, repeats)
    return 2 * size**3 / elapsed / 1e9


class BenchmarkRunner:
    """
    Run the battery sequentially, one test at a time. Synchronous workloads
    run in the default executor so the event loop keeps serving.

    A test that raises is recorded with DEGRADED_SCORE instead of aborting the
    run. Only ``abort()`` or cancelling the calling task stops the battery,
    and then nothing is returned.
    """

    def __init__(
        self,
        scale: float = 1.0,
        thermal_window: float = THERMAL_WINDOW_SECONDS,
        thermal_interval: float = THERMAL_SAMPLE_INTERVAL,
        storage_dir: Optional[Path] = None,
        cores: Optional[int] = None,
    ):
        self.scale = scale
        self.thermal_window = thermal_window
        self.thermal_interval = thermal_interval
        self.storage_dir = storage_dir
        self.cores = cores or os.cpu_count() or 1
        self._abort = asyncio.Event()

        self._workloads: dict[str, Callable[[AcceleratorInfo], Any]] = {
            "cpu_single": self._cpu_single,
            "cpu_multi": self._cpu_multi,
            "memory_bandwidth": self._memory_bandwidth,
            "memory_latency": self._memory_latency,
            "storage_sequential": self._storage_sequential,
            "matrix_small": lambda acc: self._matrix(64),
            "matrix_medium": lambda acc: self._matrix(256),
            "matrix_large": lambda acc: self._matrix(512),
            "quantization": self._quantization,
            "thermal": self._thermal,
        }

    def abort(self) -> None:
        """Abandon the running battery at the next check."""
        self._abort.set()

    async def run(
        self,
        accelerator: AcceleratorInfo,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[BenchmarkTestResult]:
        """
        Execute every test in order.

        Args:
            accelerator: Used by the quantization test for precision support
            on_progress: Called after each test with (fraction_complete, test_name)

        Returns:
            One result per test, in battery order

        Raises:
            BenchmarkAborted: abort() was called before the battery finished
        """
        self._abort = asyncio.Event()
        results = []

        for i, test in enumerate(BATTERY):
            self._check_abort()
            result = await self._run_test(test, accelerator)
            results.append(result)

            logger.info(f"Benchmark {test.id}: {result.score:.0f} points")
            if on_progress:
                on_progress((i + 1) / len(BATTERY), test.name)

        return results

    async def _run_test(
        self, test: BenchmarkTest, accelerator: AcceleratorInfo
    ) -> BenchmarkTestResult:
        start = time.perf_counter()
        degraded = False

        workload = self._workloads[test.id]
        try:
            if asyncio.iscoroutinefunction(workload):
                score, details = await workload(accelerator)
            else:
                # Blocking numpy and disk work stays off the event loop
                loop = asyncio.get_event_loop()
                score, details = await loop.run_in_executor(None, workload, accelerator)
        except (BenchmarkAborted, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.warning(f"Benchmark test {test.id} failed, using default score: {e}")
            score, details, degraded = DEGRADED_SCORE, {"error": str(e)}, True

        return BenchmarkTestResult(
            id=test.id,
            name=test.name,
            category=test.category,
            score=round(score, 1),
            details=details,
            duration=round(time.perf_counter() - start, 3),
            degraded=degraded,
        )

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise BenchmarkAborted("benchmark abandoned before completion")

    def _n(self, base: int, minimum: int = 1) -> int:
        return max(int(base * self.scale), minimum)

    # ─────────────────────────────────────────────────────────
    # BASELINE TESTS
    # ─────────────────────────────────────────────────────────

    def _cpu_single(self, accelerator: AcceleratorInfo) -> TestOutcome:
        iterations = self._n(200_000, 1000)

        def work():
            total = 0.0
            for i in range(iterations):
                total += math.sqrt(i) * math.sin(i) * math.cos(i)
            return total

        elapsed = _timed(work, 1)
        ops_per_sec = iterations / elapsed
        return ops_per_sec / 1000, {"iterations": iterations, "ops_per_sec": round(ops_per_sec)}

    def _cpu_multi(self, accelerator: AcceleratorInfo) -> TestOutcome:
        elements = self._n(1_000_000, 10_000)
        rounds = 5
        data = [np.linspace(0, 1000, elements) for _ in range(self.cores)]

        def work(arr):
            # numpy ufuncs release the GIL
            for _ in range(rounds):
                np.sqrt(arr) * np.sin(arr) * np.cos(arr)

        with ThreadPoolExecutor(max_workers=self.cores) as pool:
            start = time.perf_counter()
            list(pool.map(work, data))
            elapsed = max(time.perf_counter() - start, 1e-6)

        throughput = elements * rounds * self.cores / elapsed
        return throughput / 1e5, {"workers": self.cores, "elements_per_sec": round(throughput)}

    def _memory_bandwidth(self, accelerator: AcceleratorInfo) -> TestOutcome:
        size_bytes = self._n(64 * 1024 * 1024, 1024 * 1024)
        src = np.ones(size_bytes // 8, dtype=np.float64)
        dst = np.empty_like(src)

        elapsed = _timed(lambda: np.copyto(dst, src), 5)
        # Read plus write
        gb_per_sec = 2 * size_bytes / elapsed / 1e9
        return gb_per_sec * 200, {"gb_per_sec": round(gb_per_sec, 2)}

    def _memory_latency(self, accelerator: AcceleratorInfo) -> TestOutcome:
        elements = self._n(16 * 1024 * 1024, 64 * 1024)
        accesses = self._n(1_000_000, 10_000)
        rng = np.random.default_rng(0)
        arr = rng.random(elements)
        indices = rng.integers(0, elements, accesses)

        elapsed = _timed(lambda: arr.take(indices).sum(), 3)
        ns_per_access = elapsed / accesses * 1e9
        return 20_000 / max(ns_per_access, 0.1), {"ns_per_access": round(ns_per_access, 2)}

    def _storage_sequential(self, accelerator: AcceleratorInfo) -> TestOutcome:
        size_bytes = self._n(16 * 1024 * 1024, 256 * 1024)
        payload = os.urandom(1024 * 1024)
        chunks = max(size_bytes // len(payload), 1)
        total = chunks * len(payload)

        with tempfile.TemporaryDirectory(dir=self.storage_dir) as tmp:
            path = Path(tmp) / "bench.bin"

            start = time.perf_counter()
            with open(path, "wb") as f:
                for _ in range(chunks):
                    f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            write_s = max(time.perf_counter() - start, 1e-6)

            start = time.perf_counter()
            with open(path, "rb") as f:
                while f.read(len(payload)):
                    pass
            read_s = max(time.perf_counter() - start, 1e-6)

        mb = total / (1024 * 1024)
        mb_per_sec = 2 * mb / (write_s + read_s)
        return mb_per_sec * 2, {
            "write_mb_per_sec": round(mb / write_s, 1),
            "read_mb_per_sec": round(mb / read_s, 1),
        }

    # ─────────────────────────────────────────────────────────
    # AI TESTS
    # ─────────────────────────────────────────────────────────

    def _matrix(self, size: int) -> TestOutcome:
        repeats = max(3, int(2_000_000 / size**2 * self.scale))
        gflops = _matmul_gflops(size, min(repeats, 200))
        return gflops * 20, {"size": size, "gflops": round(gflops, 2)}

    def _quantization(self, accelerator: AcceleratorInfo) -> TestOutcome:
        """
        Throughput of a 256x256 matmul per precision.

        A precision counts as supported when the accelerator lists it or the
        CPU runs it at no less than half the fp32 rate. The score is the
        share of supported precisions.
        """
        size = max(int(256 * min(self.scale, 1.0)) // 2 * 2, 32)
        repeats = self._n(10, 2)
        rng = np.random.default_rng(1)
        a32 = rng.standard_normal((size, size)).astype(np.float32)
        b32 = rng.standard_normal((size, size)).astype(np.float32)

        a16, b16 = a32.astype(np.float16), b32.astype(np.float16)
        a8 = np.clip(a32 * 32, -127, 127).astype(np.int8)
        b8 = np.clip(b32 * 32, -127, 127).astype(np.int8)

        # int4: offset-8 nibbles, two weights per byte, unpacked before use
        nibbles = np.clip(b8.astype(np.int16) // 16 + 8, 0, 15).astype(np.uint8)
        packed = nibbles[:, ::2] | (nibbles[:, 1::2] << 4)

        def int4_matmul():
            unpacked = np.empty((size, size), dtype=np.int32)
            unpacked[:, ::2] = (packed & 0x0F).astype(np.int32) - 8
            unpacked[:, 1::2] = (packed >> 4).astype(np.int32) - 8
            return a8.astype(np.int32) @ unpacked

        timings = {
            "fp32": _timed(lambda: a32 @ b32, repeats),
            "fp16": _timed(lambda: a16 @ b16, repeats),
            "int8": _timed(lambda: a8.astype(np.int32) @ b8.astype(np.int32), repeats),
            "int4": _timed(int4_matmul, repeats),
        }
        relative = {p: timings["fp32"] / timings[p] for p in PRECISIONS}

        supported = [
            p
            for p in PRECISIONS
            if p in accelerator.supported_precisions or relative[p] >= 0.5
        ]
        breadth = len(supported) / len(PRECISIONS) * 100

        return breadth / 100 * REFERENCE_SCORE, {
            "supported": supported,
            "relative_throughput": {p: round(v, 3) for p, v in relative.items()},
            "breadth": breadth,
        }

    async def _thermal(self, accelerator: AcceleratorInfo) -> TestOutcome:
        """
        Run a fixed workload at a fixed interval across the window and compare
        the last samples with the first. Throttling shows up as lost throughput.
        """
        size = 256
        repeats = self._n(20, 2)
        samples: list[float] = []

        loop = asyncio.get_event_loop()
        deadline = loop.time() + self.thermal_window

        while True:
            self._check_abort()
            samples.append(await loop.run_in_executor(None, _matmul_gflops, size, repeats))

            if loop.time() >= deadline:
                break
            try:
                await asyncio.wait_for(self._abort.wait(), timeout=self.thermal_interval)
            except asyncio.TimeoutError:
                pass

        self._check_abort()

        head = samples[: max(len(samples) // 4, 1)]
        tail = samples[-max(len(samples) // 4, 1):]
        sustain = min(statistics.mean(tail) / max(statistics.mean(head), 1e-9), 1.0)

        return sustain * REFERENCE_SCORE, {
            "samples": len(samples),
            "sustain": round(sustain, 3),
            "peak_gflops": round(max(samples), 2),
        }
