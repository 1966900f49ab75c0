#!/usr/bin/env python3
"""
SENTINEL - Main Entry Point
Run the monitoring core headless against a simulated or real snapshot source
"""
import logging
import sys
from queue import Queue

from sentinel.config import load_settings
from sentinel.log_analysis.audit import configure_logging
from sentinel.supervisor import Supervisor
from sentinel.sysmon.poller import SnapshotPoller
from sentinel.sysmon.snapshot_source import PsutilSnapshotSource, SimulatedSnapshotSource

logger = logging.getLogger(__name__)


def build_source(kind: str):
    if kind == "psutil":
        return PsutilSnapshotSource()
    if kind != "simulated":
        logger.warning(f"Unknown snapshot source {kind!r}, using the simulated one")
    return SimulatedSnapshotSource()


def run() -> None:
    settings = load_settings()
    log_path = configure_logging()
    supervisor = Supervisor.from_settings(settings)
    if supervisor.api_key_missing:
        print("MISSING_API_KEY: AI classification will fall back to 'analysis unavailable'")

    snapshots: Queue = Queue()
    poller = SnapshotPoller(build_source(settings.source), snapshots, poll_rate=settings.poll_interval)
    poller.start()
    print(f"Logging to {log_path}")

    printed = 0
    try:
        while True:
            supervisor.pump(snapshots, timeout=settings.poll_interval)
            store = supervisor.store
            print(f"[tick {store.tick_count}] {len(store)} processes  "
                  f"CPU {store.total_cpu:5.1f}%  MEM {store.total_memory:,.0f} MB")
            entries = supervisor.audit_log.entries()
            for entry in entries[printed:]:
                print(f"  {entry}")
            printed = len(entries)
    finally:
        poller.stop()


if __name__ == "__main__":
    print("Starting SENTINEL monitoring core...")
    print("Press Ctrl+C to quit")
    print("-" * 80)

    try:
        run()
    except KeyboardInterrupt:
        print("\nSENTINEL terminated by user")
    except Exception as e:
        print(f"\nError running SENTINEL: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
