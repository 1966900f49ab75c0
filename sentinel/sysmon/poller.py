"""Background sampling of a snapshot source."""

import logging
import threading
from queue import Queue
from typing import List

from sentinel.sysmon.models import ProcessObservation
from sentinel.sysmon.snapshot_source import SnapshotSource

logger = logging.getLogger(__name__)


class SnapshotPoller:
    """
    Calls a snapshot source on a fixed cadence from a daemon thread and
    pushes each snapshot onto a thread-safe Queue.

    The consumer decides when a snapshot becomes a tick; the poller never
    touches the telemetry store.
    """

    def __init__(
        self,
        source: SnapshotSource,
        snapshot_queue: "Queue[List[ProcessObservation]]",
        poll_rate: float = 2.0,
    ) -> None:
        """
        Initialize the SnapshotPoller.

        Args:
            source: Snapshot source to sample.
            snapshot_queue: Thread-safe queue to push snapshots to.
            poll_rate: Seconds between samples. Default 2.0s.
        """
        self._source = source
        self._queue = snapshot_queue
        self._poll_rate = max(0.1, poll_rate)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def poll_rate(self) -> float:
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        self._poll_rate = max(0.1, value)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, daemon=True, name="SnapshotPoller")
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._queue.put(self._source.sample())
            except Exception:
                # keep sampling, a bad tick must not end the loop
                logger.exception("Snapshot sampling failed")

            self._stop_event.wait(timeout=self._poll_rate)
