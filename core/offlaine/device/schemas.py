"""
Records owned by the device capability engine.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from offlaine.models.schemas import PerformanceTier


class AcceleratorKind(str, Enum):
    NONE = "none"
    GPU = "gpu"
    NPU = "npu"


class AcceleratorInfo(BaseModel):
    """Heuristic guess at on-device acceleration, from device identifiers."""

    kind: AcceleratorKind = AcceleratorKind.NONE
    name: Optional[str] = None
    supports_int4: bool = False
    supported_precisions: list[str] = ["fp32"]

    @property
    def bonus(self) -> float:
        """AI score bonus for the accelerator kind."""
        if self.kind == AcceleratorKind.NPU:
            return 20.0
        if self.kind == AcceleratorKind.GPU:
            return 10.0
        return 0.0


class DeviceFacts(BaseModel):
    """Static device facts reported by the probe."""

    device_id: str = "unknown"
    device_name: str = "Unknown device"
    os_name: str = "unknown"
    os_version: str = ""
    total_memory_mb: int = 4000
    available_memory_mb: int = 2000
    cpu_cores: int = 4
    cpu_frequency_mhz: int = 2000
    storage_total_gb: float = 32
    storage_available_gb: float = 16
    identifiers: list[str] = []  # Model / chipset / GPU names for accelerator heuristics
    degraded: bool = False  # Defaults were substituted for unreadable facts


class BenchmarkTestResult(BaseModel):
    """Outcome of one test in the battery."""

    id: str
    name: str
    category: str
    score: float
    details: dict[str, Any] = {}
    duration: float = 0.0  # seconds
    degraded: bool = False  # Test failed, score is the default


class ModelRecommendation(BaseModel):
    """A candidate model ranked for this device."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    name: str
    tier: str  # light / medium / heavy
    parameter_count: str
    quantization: str
    estimated_tokens_per_second: float
    estimated_memory_mb: int
    battery_impact: str  # low / medium / high
    compatibility_score: float = Field(ge=0, le=100)
    use_cases: list[str] = []


class BenchmarkResult(BaseModel):
    """A complete benchmark run. Only ever persisted whole."""

    facts: DeviceFacts
    accelerator: AcceleratorInfo
    tests: list[BenchmarkTestResult]
    benchmark_score: float
    ai_score: float
    performance_tier: PerformanceTier
    recommendations: list[ModelRecommendation] = []
    benchmarked_at: datetime = Field(default_factory=datetime.now)
    degraded: bool = False


class BenchmarkFailure(BaseModel):
    """Marker left behind by a failed run."""

    error: str
    failed_at: datetime = Field(default_factory=datetime.now)


class BenchmarkStatus(BaseModel):
    state: str  # never_run / running / completed / failed
    benchmarked_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None


class ResourceUsage(BaseModel):
    """One resource monitor sample."""

    model_config = ConfigDict(protected_namespaces=())

    timestamp: datetime = Field(default_factory=datetime.now)
    cpu_usage: float = 0.0  # percent
    memory_usage_mb: float = 0.0
    total_memory_mb: float = 0.0
    battery_level: Optional[float] = None  # percent, None without a battery
    battery_drain: float = 0.0  # percent per hour
    temperature: Optional[float] = None  # Celsius
    model_id: Optional[str] = None
    task_type: Optional[str] = None
    session_id: Optional[str] = None


class ResourceThresholds(BaseModel):
    cpu_warning: float = 70
    cpu_critical: float = 90
    memory_warning_mb: float = 3000
    memory_critical_mb: float = 4000
    battery_warning: float = 20
    temperature_warning: float = 45


class SessionMetrics(BaseModel):
    average_cpu_usage: float = 0.0
    peak_cpu_usage: float = 0.0
    average_memory_mb: float = 0.0
    peak_memory_mb: float = 0.0
    total_battery_drain: float = 0.0
    session_duration: float = 0.0  # seconds
    performance_score: int = 100


class MonitoringSession(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    session_id: str
    model_id: Optional[str] = None
    task_type: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)


class ResourceTrends(BaseModel):
    cpu: str = "stable"  # increasing / decreasing / stable
    memory: str = "stable"
    battery: str = "stable"  # improving / declining / stable


class PerformanceReport(BaseModel):
    summary: str
    metrics: Optional[SessionMetrics] = None
    recommendations: list[str] = []
    trends: ResourceTrends = ResourceTrends()
