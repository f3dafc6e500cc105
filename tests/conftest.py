import os
import tempfile
from datetime import date, datetime

import numpy as np
import pytest

os.environ.setdefault("CLASS_MONITOR_LOG_DIR", tempfile.mkdtemp(prefix="class-monitor-logs-"))

from class_monitor.monitor_types import Identity, ProbeEmbedding, Region  # noqa: E402

TODAY = date(2025, 9, 2)


def make_identity(identity_id, embedding=None, name=None):
    vector = None if embedding is None else np.asarray(embedding, dtype=np.float32)
    return Identity(
        identity_id=identity_id,
        display_name=name or f"Student {identity_id}",
        external_id=f"S-{identity_id}",
        reference_embedding=vector,
    )


def make_probe(vector, bbox=(0, 0, 10, 10), score=0.9):
    return ProbeEmbedding(region=Region(bbox=bbox, score=score), vector=np.asarray(vector, dtype=np.float32))


class FakeLookups:
    def __init__(self, excused=(), notified=(), failing=()):
        self.excused = set(excused)
        self.notified = set(notified)
        self.failing = set(failing)
        self.calls = []

    def exists_valid_excuse(self, identity_id, on_date, class_hour):
        self.calls.append(("excuse", identity_id, on_date, class_hour))
        if identity_id in self.failing:
            raise RuntimeError("lookup backend unavailable")
        return identity_id in self.excused

    def exists_notification(self, identity_id, on_date, class_hour):
        self.calls.append(("notification", identity_id, on_date, class_hour))
        return identity_id in self.notified


class RecordingSink:
    def __init__(self, lookups=None):
        self.lookups = lookups
        self.alerts = []

    def emit(self, alert):
        self.alerts.append(alert)
        if self.lookups is not None:
            self.lookups.notified.add(alert.identity.identity_id)


class FakeEngine:
    def __init__(self, probes=None, fail_init=False, init_delay=0.0):
        self.probes = list(probes or [])
        self.fail_init = fail_init
        self.init_delay = init_delay
        self.init_calls = 0
        self.extract_calls = 0
        self.initialized = False

    def initialize(self):
        import time

        from class_monitor.exceptions import InitializationError

        self.init_calls += 1
        if self.init_delay:
            time.sleep(self.init_delay)
        if self.fail_init:
            raise InitializationError("model weights missing")
        self.initialized = True

    def extract(self, image):
        self.extract_calls += 1
        return list(self.probes)


class FixedClock:
    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment


@pytest.fixture
def frame():
    return np.zeros((48, 64, 3), dtype=np.uint8)


@pytest.fixture
def class_time():
    return FixedClock(datetime(2025, 9, 2, 9, 30))


@pytest.fixture
def break_time():
    return FixedClock(datetime(2025, 9, 2, 10, 50))
