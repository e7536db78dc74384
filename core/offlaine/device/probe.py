"""
Device-information probe.
Static facts (memory, storage, cores, OS) plus the identifiers used to guess
whether the device has an NPU or GPU.
"""

import asyncio
import platform
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import psutil

from offlaine.config import DATA_DIR
from offlaine.device.schemas import AcceleratorInfo, AcceleratorKind, DeviceFacts
from offlaine.utils.logging import logger

MB = 1024 * 1024
GB = 1024 * MB

# identifier pattern -> (kind, int4 support)
ACCELERATOR_PATTERNS: list[tuple[re.Pattern, AcceleratorKind, bool]] = [
    (re.compile(r"apple m\d|\bm[1-4]\b|\ba1[4-9]\b|arm64.*darwin", re.I), AcceleratorKind.NPU, True),
    (re.compile(r"snapdragon|hexagon|qualcomm", re.I), AcceleratorKind.NPU, True),
    (re.compile(r"tensor g\d|google tensor|edgetpu", re.I), AcceleratorKind.NPU, True),
    (re.compile(r"dimensity|\bapu\b|kirin|exynos 2[12]", re.I), AcceleratorKind.NPU, False),
    (re.compile(r"nvidia|geforce|rtx|cuda|tesla", re.I), AcceleratorKind.GPU, True),
    (re.compile(r"radeon|\bamd\b.*gpu|rocm", re.I), AcceleratorKind.GPU, False),
    (re.compile(r"adreno|mali|powervr|intel.*(iris|arc)", re.I), AcceleratorKind.GPU, False),
]


def detect_accelerator(identifiers: list[str]) -> AcceleratorInfo:
    """
    Guess the accelerator from device identifiers. First matching pattern wins.

    Args:
        identifiers: Free-form strings such as model, chipset or GPU names

    Returns:
        AcceleratorInfo, kind NONE when nothing matched
    """
    for identifier in identifiers:
        for pattern, kind, int4 in ACCELERATOR_PATTERNS:
            if pattern.search(identifier):
                precisions = ["fp32", "fp16", "int8"] + (["int4"] if int4 else [])
                return AcceleratorInfo(
                    kind=kind,
                    name=identifier,
                    supports_int4=int4,
                    supported_precisions=precisions,
                )

    return AcceleratorInfo()


class DeviceProbe(ABC):
    """Source of static device facts."""

    @abstractmethod
    async def get_facts(self) -> DeviceFacts: ...

    async def get_accelerator(self) -> AcceleratorInfo:
        facts = await self.get_facts()
        return detect_accelerator(facts.identifiers)


class StaticDeviceProbe(DeviceProbe):
    """Fixed facts, for tests and for overriding detection."""

    def __init__(self, facts: Optional[DeviceFacts] = None):
        self.facts = facts or DeviceFacts()

    async def get_facts(self) -> DeviceFacts:
        return self.facts.model_copy()


class SystemDeviceProbe(DeviceProbe):
    """Read facts from the host with psutil and platform."""

    def __init__(self, storage_path: Path = DATA_DIR):
        self.storage_path = storage_path

    async def get_facts(self) -> DeviceFacts:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._collect)

    def _collect(self) -> DeviceFacts:
        defaults = DeviceFacts()
        degraded = False

        try:
            vm = psutil.virtual_memory()
            total_memory_mb = round(vm.total / MB)
            available_memory_mb = round(vm.available / MB)
        except Exception as e:
            logger.warning(f"Memory detection failed, using defaults: {e}")
            total_memory_mb = defaults.total_memory_mb
            available_memory_mb = defaults.available_memory_mb
            degraded = True

        cores = psutil.cpu_count(logical=False) or psutil.cpu_count() or defaults.cpu_cores

        try:
            freq = psutil.cpu_freq()
            frequency_mhz = int(freq.max or freq.current) if freq else defaults.cpu_frequency_mhz
        except Exception as e:
            logger.debug(f"CPU frequency unavailable: {e}")
            frequency_mhz = defaults.cpu_frequency_mhz

        try:
            disk = psutil.disk_usage(str(self._existing_ancestor(self.storage_path)))
            storage_total_gb = round(disk.total / GB, 1)
            storage_available_gb = round(disk.free / GB, 1)
        except Exception as e:
            logger.warning(f"Storage detection failed, using defaults: {e}")
            storage_total_gb = defaults.storage_total_gb
            storage_available_gb = defaults.storage_available_gb
            degraded = True

        uname = platform.uname()
        identifiers = [
            s
            for s in (platform.processor(), uname.machine, f"{uname.machine} {uname.system}")
            if s and s.strip()
        ]

        return DeviceFacts(
            device_id=str(uuid.UUID(int=uuid.getnode())),
            device_name=uname.node or defaults.device_name,
            os_name=uname.system or defaults.os_name,
            os_version=uname.release,
            total_memory_mb=total_memory_mb,
            available_memory_mb=available_memory_mb,
            cpu_cores=cores,
            cpu_frequency_mhz=frequency_mhz,
            storage_total_gb=storage_total_gb,
            storage_available_gb=storage_available_gb,
            identifiers=identifiers,
            degraded=degraded,
        )

    @staticmethod
    def _existing_ancestor(path: Path) -> Path:
        path = Path(path)
        while not path.exists() and path != path.parent:
            path = path.parent
        return path
