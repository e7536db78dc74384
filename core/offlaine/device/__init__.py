"""Device module - Probing, benchmarking, tier classification and resource monitoring."""

from offlaine.device.benchmark import BenchmarkRunner
from offlaine.device.monitor import ResourceMonitor, RingBuffer
from offlaine.device.probe import DeviceProbe, StaticDeviceProbe, SystemDeviceProbe
from offlaine.device.recommendations import RecommendationEngine
from offlaine.device.service import DeviceCapabilityService
from offlaine.device.tiers import classify_tier

__all__ = [
    "BenchmarkRunner",
    "DeviceCapabilityService",
    "DeviceProbe",
    "RecommendationEngine",
    "ResourceMonitor",
    "RingBuffer",
    "StaticDeviceProbe",
    "SystemDeviceProbe",
    "classify_tier",
]
