import random
from datetime import datetime, timedelta

import pytest
from unittest.mock import MagicMock

from sentinel.log_analysis.audit_log import AuditLog
from sentinel.sysmon.telemetry_store import TelemetryStore
from sentinel.threat_detector.ai_client import AISupervisorClient


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


class ManualDispatcher:
    """Holds dispatched jobs until the test runs them, in any order it likes."""

    def __init__(self):
        self.jobs = []

    def __call__(self, job):
        self.jobs.append(job)

    def run(self, index=0):
        self.jobs.pop(index)()

    def run_all(self):
        while self.jobs:
            self.run()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_log(clock):
    return AuditLog(clock=clock)


@pytest.fixture
def store(audit_log, clock):
    return TelemetryStore(audit_log=audit_log, clock=clock, rng=random.Random(7))


@pytest.fixture
def dispatcher():
    return ManualDispatcher()


@pytest.fixture
def mock_client():
    client = MagicMock(spec=AISupervisorClient)
    client.has_api_key = True
    return client


def observation(pid, parent_pid=0, name=None, cpu=1.0, memory=10.0, **extra):
    data = {
        "pid": pid,
        "parentPid": parent_pid,
        "name": name or f"proc_{pid}.exe",
        "cpu": cpu,
        "memory": memory,
        "networkIo": extra.pop("networkIo", 0.0),
        "diskIo": extra.pop("diskIo", 0.0),
        "handleCount": extra.pop("handleCount", 100),
        "entropy": extra.pop("entropy", 5.0),
        "isSigned": extra.pop("isSigned", True),
    }
    data.update(extra)
    return data
