"""
Snapshot sources feeding the telemetry store.

SimulatedSnapshotSource replays a fixed "golden image" of five Windows
processes with random telemetry drift. PsutilSnapshotSource samples the real
host through psutil.
"""
import copy
import logging
import os
import random
import time
from typing import Dict, List, Optional, Protocol, Tuple

import psutil

from sentinel.sysmon.models import ModuleInfo, ProcessObservation, RiskLevel
from sentinel.util import basename, file_entropy

logger = logging.getLogger(__name__)

MB = 1024 * 1024

TRUSTED_PREFIXES = (
    "/usr/", "/bin/", "/sbin/", "/lib/", "/opt/",
    "c:\\windows\\", "c:\\program files\\", "c:\\program files (x86)\\",
)


class SnapshotSource(Protocol):
    def sample(self) -> List[ProcessObservation]:
        ...


def _common_modules() -> List[dict]:
    return [
        {"name": "ntdll.dll", "path": "C:\\Windows\\System32\\ntdll.dll", "is_signed": True,
         "base_address": "0x7FFC34000000", "size_kb": 2048},
        {"name": "kernel32.dll", "path": "C:\\Windows\\System32\\kernel32.dll", "is_signed": True,
         "base_address": "0x7FFC33000000", "size_kb": 768},
        {"name": "kernelbase.dll", "path": "C:\\Windows\\System32\\kernelbase.dll", "is_signed": True,
         "base_address": "0x7FFC32000000", "size_kb": 2900},
    ]


GOLDEN_IMAGE: List[dict] = [
    {
        "pid": 4, "parent_pid": 0, "name": "System", "user": "SYSTEM", "session_id": 0,
        "cpu_percent": 0.1, "memory_mb": 24, "disk_io_rate": 15.2, "network_io_rate": 0,
        "entropy": 1.2, "is_signed": True, "handle_count": 12050,
        "executable_path": "C:\\Windows\\System32\\ntoskrnl.exe",
        "risk_level": RiskLevel.SAFE, "tags": ["kernel"],
        "modules": [
            {"name": "ntoskrnl.exe", "path": "C:\\Windows\\System32\\ntoskrnl.exe", "is_signed": True,
             "base_address": "0xFFFFF80000000000", "size_kb": 10240},
            {"name": "hal.dll", "path": "C:\\Windows\\System32\\hal.dll", "is_signed": True,
             "base_address": "0xFFFFF80000A00000", "size_kb": 512},
        ] + _common_modules(),
    },
    {
        "pid": 1024, "parent_pid": 600, "name": "svchost.exe", "user": "NETWORK SERVICE", "session_id": 0,
        "cpu_percent": 0.5, "memory_mb": 128, "disk_io_rate": 0.1, "network_io_rate": 45.2,
        "entropy": 6.1, "is_signed": True, "handle_count": 850,
        "executable_path": "C:\\Windows\\System32\\svchost.exe",
        "risk_level": RiskLevel.SAFE, "tags": ["service"],
        "modules": [
            {"name": "svchost.exe", "path": "C:\\Windows\\System32\\svchost.exe", "is_signed": True,
             "base_address": "0x7FF710000000", "size_kb": 56},
            {"name": "rpcrt4.dll", "path": "C:\\Windows\\System32\\rpcrt4.dll", "is_signed": True,
             "base_address": "0x7FFC35000000", "size_kb": 1200},
            {"name": "sechost.dll", "path": "C:\\Windows\\System32\\sechost.dll", "is_signed": True,
             "base_address": "0x7FFC36000000", "size_kb": 450},
        ] + _common_modules(),
    },
    {
        "pid": 5620, "parent_pid": 1420, "name": "chrome.exe", "user": "User", "session_id": 1,
        "cpu_percent": 12.4, "memory_mb": 850, "disk_io_rate": 2.5, "network_io_rate": 1200,
        "entropy": 6.8, "is_signed": True, "handle_count": 1500,
        "executable_path": "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
        "risk_level": RiskLevel.SAFE, "tags": ["browser"],
        "modules": [
            {"name": "chrome.exe", "path": "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
             "is_signed": True, "base_address": "0x7FF740000000", "size_kb": 3050},
            {"name": "chrome_elf.dll", "path": "C:\\Program Files\\Google\\Chrome\\Application\\chrome_elf.dll",
             "is_signed": True, "base_address": "0x7FFC50000000", "size_kb": 120},
            {"name": "libglesv2.dll", "path": "C:\\Program Files\\Google\\Chrome\\Application\\libglesv2.dll",
             "is_signed": True, "base_address": "0x7FFC51000000", "size_kb": 4500},
        ] + _common_modules(),
    },
    {
        "pid": 9999, "parent_pid": 1420, "name": "powershell.exe", "user": "User", "session_id": 1,
        "cpu_percent": 0.1, "memory_mb": 45, "disk_io_rate": 0, "network_io_rate": 0,
        "entropy": 5.5, "is_signed": True, "handle_count": 320,
        "executable_path": "C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe",
        "risk_level": RiskLevel.SUSPICIOUS, "tags": ["shell"],
        "modules": [
            {"name": "powershell.exe", "path": "C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe",
             "is_signed": True, "base_address": "0x7FF780000000", "size_kb": 450},
            {"name": "mscoree.dll", "path": "C:\\Windows\\System32\\mscoree.dll", "is_signed": True,
             "base_address": "0x7FFC60000000", "size_kb": 320},
            {"name": "clr.dll", "path": "C:\\Windows\\Microsoft.NET\\Framework64\\v4.0.30319\\clr.dll",
             "is_signed": True, "base_address": "0x7FFC61000000", "size_kb": 8500},
        ] + _common_modules(),
    },
    {
        "pid": 1337, "parent_pid": 1024, "name": "updater_svc.exe", "user": "SYSTEM", "session_id": 0,
        "cpu_percent": 88.5, "memory_mb": 2048, "disk_io_rate": 120.0, "network_io_rate": 5500,
        "entropy": 7.9, "is_signed": False, "handle_count": 45000,
        "executable_path": "C:\\Temp\\updater_svc.exe",
        "risk_level": RiskLevel.MALICIOUS, "tags": ["unknown", "high-resource"],
        "modules": [
            {"name": "updater_svc.exe", "path": "C:\\Temp\\updater_svc.exe", "is_signed": False,
             "base_address": "0x140000000", "size_kb": 1500},
            {"name": "wininet.dll", "path": "C:\\Windows\\System32\\wininet.dll", "is_signed": True,
             "base_address": "0x7FFC38000000", "size_kb": 2300},
            {"name": "miner_logic.dll", "path": "C:\\Temp\\miner_logic.dll", "is_signed": False,
             "base_address": "0x7FFC90000000", "size_kb": 450},
            {"name": "crypto_lib.dll", "path": "C:\\Temp\\crypto_lib.dll", "is_signed": False,
             "base_address": "0x7FFC91000000", "size_kb": 890},
        ] + _common_modules(),
    },
]


class SimulatedSnapshotSource:
    """
    Golden-image process set with random drift on every sample.

    Processes tagged "high-resource" are pinned between 50 and 100 % CPU.
    """

    def __init__(self, baseline: Optional[List[dict]] = None, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._state: List[dict] = copy.deepcopy(baseline if baseline is not None else GOLDEN_IMAGE)

    def sample(self) -> List[ProcessObservation]:
        observations = []
        for proc in self._state:
            cpu = max(0.0, proc["cpu_percent"] + (self._rng.random() - 0.5) * 5)
            if "high-resource" in proc.get("tags", []):
                cpu = max(50.0, min(100.0, cpu + 2))
            proc["cpu_percent"] = round(cpu, 1)
            proc["memory_mb"] = float(int(max(1.0, proc["memory_mb"] + (self._rng.random() - 0.5) * 10)))
            proc["network_io_rate"] = max(0.0, round(proc["network_io_rate"] + (self._rng.random() - 0.5) * 50, 1))
            observations.append(ProcessObservation.model_validate(proc))
        return observations


def is_trusted_path(path: str) -> bool:
    return bool(path) and path.lower().startswith(TRUSTED_PREFIXES)


class PsutilSnapshotSource:
    """
    Samples the local host with psutil.

    Processes that vanish mid-sample or deny access are skipped. Signature
    state is approximated by the image location, entropy is computed once
    per executable path.
    """

    # io_counters, num_handles and num_fds only exist on some platforms
    ATTRS = [
        name for name in (
            "pid", "ppid", "name", "username", "exe",
            "cpu_percent", "memory_info", "io_counters", "num_handles", "num_fds",
        )
        if hasattr(psutil.Process, name)
    ]

    def __init__(self, include_modules: bool = False, max_modules: int = 10, entropy_cache_limit: int = 512):
        self.include_modules = include_modules
        self.max_modules = max_modules
        self.entropy_cache_limit = entropy_cache_limit
        self._entropy_cache: Dict[str, float] = {}
        self._io_totals: Dict[int, Tuple[float, int]] = {}
        self._cpu_count = psutil.cpu_count() or 1
        self._session_id = os.getsid(0) if hasattr(os, "getsid") else 0

    def sample(self) -> List[ProcessObservation]:
        now = time.monotonic()
        observations: List[ProcessObservation] = []
        live = set()

        for proc in psutil.process_iter(attrs=self.ATTRS):
            try:
                with proc.oneshot():
                    info = proc.info
                    pid = info.get("pid", 0)
                    exe = info.get("exe") or ""
                    mem_info = info.get("memory_info")
                    handles = info.get("num_handles") or info.get("num_fds") or 0

                    observations.append(ProcessObservation(
                        pid=pid,
                        parent_pid=info.get("ppid") or 0,
                        name=info.get("name") or "",
                        user=info.get("username") or "",
                        session_id=self._session_id,
                        executable_path=exe,
                        cpu_percent=(info.get("cpu_percent") or 0.0) / self._cpu_count,
                        memory_mb=(mem_info.rss / MB) if mem_info else 0.0,
                        disk_io_rate=self._disk_rate(pid, info.get("io_counters"), now),
                        network_io_rate=0.0,
                        handle_count=handles,
                        entropy=self._entropy(exe),
                        is_signed=is_trusted_path(exe),
                        modules=self._modules(proc) if self.include_modules else [],
                    ))
                    live.add(pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        self._io_totals = {pid: v for pid, v in self._io_totals.items() if pid in live}
        return observations

    def _disk_rate(self, pid: int, io, now: float) -> float:
        """MB/s since the previous sample of the same pid."""
        if io is None:
            return 0.0
        total = io.read_bytes + io.write_bytes
        previous = self._io_totals.get(pid)
        self._io_totals[pid] = (now, total)
        if previous is None:
            return 0.0
        elapsed = now - previous[0]
        if elapsed <= 0:
            return 0.0
        return max(0.0, (total - previous[1]) / MB / elapsed)

    def _entropy(self, exe: str) -> float:
        if not exe:
            return 0.0
        if exe not in self._entropy_cache:
            if len(self._entropy_cache) >= self.entropy_cache_limit:
                self._entropy_cache.pop(next(iter(self._entropy_cache)))
            self._entropy_cache[exe] = file_entropy(exe)
        return self._entropy_cache[exe]

    def _modules(self, proc) -> List[ModuleInfo]:
        modules: List[ModuleInfo] = []
        seen = set()
        try:
            for mmap in proc.memory_maps(grouped=True):
                path = mmap.path
                if not path or path in seen or path.startswith("["):
                    continue
                seen.add(path)
                modules.append(ModuleInfo(
                    name=basename(path),
                    path=path,
                    is_signed=is_trusted_path(path),
                    size_kb=int(mmap.rss // 1024),
                ))
                if len(modules) >= self.max_modules:
                    break
        except (psutil.NoSuchProcess, psutil.AccessDenied, AttributeError, NotImplementedError):
            pass
        return modules
