"""
Telemetry Store - the single-writer owner of the live process set

Handles:
- Snapshot ingestion (in-place telemetry updates, admission of new pids)
- Aggregate metrics and their bounded history series
- Selection state and selection listeners
- Lifecycle commands (terminate / spawn) with their audit trail
"""
import logging
import random
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from sentinel.log_analysis.audit_log import AuditLog
from sentinel.sysmon.models import ProcessObservation, ProcessRecord, RiskLevel
from sentinel.threat_detector.heuristics import SpawnHeuristic, suspicious_name_heuristic

logger = logging.getLogger(__name__)

TELEMETRY_FIELDS = ("cpu_percent", "memory_mb", "disk_io_rate", "network_io_rate", "handle_count")

SPAWN_PARENT_PID = 4000  # explorer.exe in the simulated session
DEFAULT_PROTECTED_PIDS = frozenset({0, 4})


class TerminateOutcome(str, Enum):
    OK = "ok"
    DENIED = "denied"
    NOT_FOUND = "not_found"


class HistorySeries:
    """Fixed window of (timestamp, value) samples, oldest dropped first."""

    def __init__(self, name: str, window: int = 20):
        self.name = name
        self.window = window
        self._samples: deque = deque(maxlen=window)

    def append(self, timestamp: datetime, value: float) -> None:
        self._samples.append((timestamp, value))

    def samples(self) -> List[Tuple[datetime, float]]:
        return list(self._samples)

    def values(self) -> List[float]:
        return [value for _, value in self._samples]

    def latest(self) -> Optional[Tuple[datetime, float]]:
        return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        return len(self._samples)


class TelemetryStore:
    """
    Holds the current process set and everything derived from it.

    All mutation is expected to happen on one control thread; the store does
    no locking of its own.
    """

    def __init__(
        self,
        audit_log: Optional[AuditLog] = None,
        drop_missing: bool = False,
        history_window: int = 20,
        protected_pids: Iterable[int] = DEFAULT_PROTECTED_PIDS,
        spawn_pid_floor: int = 10000,
        spawn_heuristic: SpawnHeuristic = suspicious_name_heuristic,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.audit_log = audit_log if audit_log is not None else AuditLog()
        self.drop_missing = drop_missing
        self.spawn_pid_floor = spawn_pid_floor
        self.spawn_heuristic = spawn_heuristic
        self._clock = clock or datetime.now
        self._rng = rng or random.Random()

        self._processes: Dict[int, ProcessRecord] = {}
        self._protected: Set[int] = set(protected_pids)
        self._terminated: Set[int] = set()
        self._spawned: Set[int] = set()
        self._last_spawned_pid = 0
        self._selected_pid: Optional[int] = None
        self._selection_listeners: List[Callable[[Optional[int]], None]] = []

        self.cpu_history = HistorySeries("total_cpu", history_window)
        self.memory_history = HistorySeries("total_memory", history_window)
        self.total_cpu = 0.0
        self.total_memory = 0.0
        self.tick_count = 0

    # ------------------------------------------------------------------ reads

    @property
    def selected_pid(self) -> Optional[int]:
        return self._selected_pid

    @property
    def selected_process(self) -> Optional[ProcessRecord]:
        if self._selected_pid is None:
            return None
        return self._processes.get(self._selected_pid)

    @property
    def protected_pids(self) -> frozenset:
        return frozenset(self._protected)

    def get(self, pid: int) -> Optional[ProcessRecord]:
        return self._processes.get(pid)

    def processes(self) -> List[ProcessRecord]:
        return list(self._processes.values())

    def pids(self) -> Set[int]:
        return set(self._processes)

    def __contains__(self, pid) -> bool:
        return pid in self._processes

    def __len__(self) -> int:
        return len(self._processes)

    # ---------------------------------------------------------------- ingest

    def ingest(self, observations: Iterable) -> None:
        """
        Merges one snapshot into the live set and records the tick aggregates.

        Args:
            observations: ProcessObservation / ProcessRecord instances or plain
                mappings in snapshot order.
        """
        latest: Dict[int, ProcessObservation] = {}
        for raw in observations:
            observation = self._coerce(raw)
            if observation is None:
                continue
            if observation.pid in latest:
                logger.warning(f"Duplicate PID {observation.pid} in snapshot, keeping the last observation")
            latest[observation.pid] = observation

        seen: Set[int] = set(latest)
        for pid, observation in latest.items():
            if pid in self._terminated:
                continue

            if pid in self._spawned:
                logger.warning(f"Snapshot reports PID {pid} which belongs to a spawned process, ignored")
                continue

            existing = self._processes.get(pid)
            if existing is not None:
                for name in TELEMETRY_FIELDS:
                    setattr(existing, name, getattr(observation, name))
            else:
                self._processes[pid] = ProcessRecord.from_observation(observation)

        # a tombstoned pid that disappeared may be reused by the host later
        self._terminated &= seen

        if self.drop_missing:
            for pid in [p for p in self._processes if p not in seen and p not in self._spawned]:
                del self._processes[pid]
                logger.debug(f"PID {pid} missing from snapshot, dropped")
                if self._selected_pid == pid:
                    self._set_selection(None)

        self._record_aggregates()

    def _coerce(self, raw) -> Optional[ProcessObservation]:
        if isinstance(raw, ProcessObservation):
            return raw
        try:
            return ProcessObservation.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Skipping malformed process observation: {e.error_count()} validation error(s)")
            return None

    def _record_aggregates(self) -> None:
        now = self._clock()
        self.total_cpu = min(100.0, sum(p.cpu_percent for p in self._processes.values()))
        self.total_memory = sum(p.memory_mb for p in self._processes.values())
        self.cpu_history.append(now, round(self.total_cpu, 1))
        self.memory_history.append(now, self.total_memory)
        self.tick_count += 1

    # ------------------------------------------------------------- selection

    def add_selection_listener(self, listener: Callable[[Optional[int]], None]) -> None:
        self._selection_listeners.append(listener)

    def select(self, pid: int) -> bool:
        if pid not in self._processes:
            logger.warning(f"Cannot select PID {pid}: not in the live set")
            return False
        if pid != self._selected_pid:
            self._set_selection(pid)
        return True

    def deselect(self) -> None:
        if self._selected_pid is not None:
            self._set_selection(None)

    def _set_selection(self, pid: Optional[int]) -> None:
        self._selected_pid = pid
        for listener in self._selection_listeners:
            listener(pid)

    # -------------------------------------------------------------- commands

    def protect(self, pid: int) -> None:
        """Marks a pid as non-terminable for the rest of the session."""
        self._protected.add(pid)

    def terminate(self, pid: int) -> TerminateOutcome:
        """
        Removes a process unless it is protected.

        Returns:
            TerminateOutcome: DENIED for protected pids, NOT_FOUND when the
            pid is not live, OK once the record has been removed.
        """
        if pid in self._protected:
            self.audit_log.append("KERNEL", f"ERROR: Access Denied. Cannot terminate System process PID {pid}.")
            logger.warning(f"Terminate denied for protected PID {pid}")
            return TerminateOutcome.DENIED

        if pid not in self._processes:
            self.audit_log.append("KERNEL", f"ERROR: Process PID {pid} not found.")
            return TerminateOutcome.NOT_FOUND

        self.audit_log.append("USER", f"TerminateProcess(PID={pid}) invoked.")
        del self._processes[pid]
        self._terminated.add(pid)
        self._spawned.discard(pid)
        self.audit_log.append("KERNEL", f"Process PID {pid} terminated successfully.")

        if self._selected_pid == pid:
            self._set_selection(None)
        return TerminateOutcome.OK

    def spawn(self, name: str, path: str) -> int:
        """
        Admits a user-started process and selects it.

        Returns:
            int: The pid allocated to the new process.
        """
        pid = self._allocate_pid()
        entropy, is_signed = self.spawn_heuristic(name, path)

        record = ProcessRecord(
            pid=pid,
            parent_pid=SPAWN_PARENT_PID,
            name=name,
            user="User",
            session_id=1,
            executable_path=path,
            cpu_percent=0.1,
            memory_mb=float(self._rng.randint(10, 59)),
            disk_io_rate=5.0,
            network_io_rate=0.0,
            handle_count=150,
            entropy=entropy,
            is_signed=is_signed,
            modules=[],
            tags={"user-spawned", "new"},
            risk_level=RiskLevel.UNKNOWN,
        )
        self._processes[pid] = record
        self._last_spawned_pid = pid
        self._spawned.add(pid)
        self.audit_log.append("USER", f"RunTask: Spawned {name} (PID {pid}).")
        self.select(pid)
        return pid

    def _allocate_pid(self) -> int:
        highest = max(self._processes.keys() | self._terminated | {self._last_spawned_pid}, default=0)
        return max(self.spawn_pid_floor, highest + 1)
