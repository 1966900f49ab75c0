"""
Command surface of the monitoring core.

Supervisor owns the telemetry store and the risk classifier pipeline and is
the only object a presentation layer needs to talk to.
"""
import logging
from queue import Empty, Queue
from typing import Iterable, List, Optional

from sentinel.config import Settings
from sentinel.log_analysis.audit_log import AuditLog
from sentinel.sysmon.hierarchy import HierarchyResolver, HierarchyResult
from sentinel.sysmon.models import ModuleInfo, ProcessRecord
from sentinel.sysmon.telemetry_store import TelemetryStore, TerminateOutcome
from sentinel.threat_detector.ai_client import AISupervisorClient
from sentinel.threat_detector.heuristics import SpawnHeuristic, suspicious_name_heuristic
from sentinel.threat_detector.pipeline import Dispatcher, RiskClassifierPipeline
from sentinel.util import basename

logger = logging.getLogger(__name__)


class Supervisor:

    def __init__(
        self,
        store: TelemetryStore,
        client: AISupervisorClient,
        dispatcher: Optional[Dispatcher] = None,
        resolver: Optional[HierarchyResolver] = None,
    ):
        self.store = store
        self.client = client
        self.pipeline = RiskClassifierPipeline(store, client, dispatcher=dispatcher)
        self.resolver = resolver or HierarchyResolver()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[AISupervisorClient] = None,
        dispatcher: Optional[Dispatcher] = None,
        spawn_heuristic: SpawnHeuristic = suspicious_name_heuristic,
    ) -> "Supervisor":
        store = TelemetryStore(
            audit_log=AuditLog(view_limit=settings.audit_view_limit),
            drop_missing=settings.drop_missing,
            history_window=settings.history_window,
            protected_pids=settings.protected_pids,
            spawn_pid_floor=settings.spawn_pid_floor,
            spawn_heuristic=spawn_heuristic,
        )
        return cls(store, client or AISupervisorClient.from_settings(settings), dispatcher=dispatcher)

    @property
    def audit_log(self) -> AuditLog:
        return self.store.audit_log

    @property
    def api_key_missing(self) -> bool:
        return not self.client.has_api_key

    # ------------------------------------------------------------------ ticks

    def tick(self, observations: Iterable) -> int:
        """Ingests one snapshot, then applies finished analysis calls."""
        self.store.ingest(observations)
        return self.pipeline.drain()

    def pump(self, snapshot_queue: Queue, timeout: Optional[float] = None) -> int:
        """
        Turns every queued snapshot into a tick.

        Args:
            snapshot_queue: Queue filled by a SnapshotPoller.
            timeout: Seconds to wait for the first snapshot, None to not wait.

        Returns:
            int: Number of ticks performed.
        """
        ticks = 0
        try:
            snapshot = snapshot_queue.get(timeout=timeout) if timeout else snapshot_queue.get_nowait()
        except Empty:
            self.pipeline.drain()
            return ticks

        while True:
            self.tick(snapshot)
            ticks += 1
            try:
                snapshot = snapshot_queue.get_nowait()
            except Empty:
                break
        return ticks

    # --------------------------------------------------------------- commands

    def select_process(self, pid: int) -> bool:
        return self.store.select(pid)

    def deselect(self) -> None:
        self.store.deselect()

    def terminate(self, pid: int) -> TerminateOutcome:
        return self.store.terminate(pid)

    def spawn(self, name: str, path: str) -> int:
        return self.store.spawn(name, path)

    def run_task(self, command: str) -> Optional[int]:
        """Spawns from a Run dialog entry; the image name is the last path segment."""
        command = (command or "").strip()
        if not command:
            return None
        return self.spawn(basename(command), command)

    def trigger_analysis(self, pid: int) -> bool:
        if pid != self.store.selected_pid and not self.store.select(pid):
            return False
        return self.pipeline.trigger_analysis(pid)

    def trigger_research(self, pid: int) -> bool:
        return self.pipeline.trigger_research(pid)

    def submit_visual_evidence(self, image: bytes, mime_type: str) -> bool:
        return self.pipeline.submit_visual_evidence(image, mime_type)

    # ------------------------------------------------------------------ views

    @property
    def selected_process(self) -> Optional[ProcessRecord]:
        return self.store.selected_process

    def process_tree(self) -> HierarchyResult:
        return self.resolver.resolve(self.store.processes())

    def filter_modules(self, pid: int, query: str = "") -> List[ModuleInfo]:
        proc = self.store.get(pid)
        if proc is None:
            return []
        needle = query.lower()
        return [m for m in proc.modules if needle in m.name.lower() or needle in m.path.lower()]
