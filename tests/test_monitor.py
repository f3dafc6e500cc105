import threading
import time
from datetime import datetime

import pytest

from conftest import FakeEngine, FakeLookups, FixedClock, RecordingSink, make_identity, make_probe

from class_monitor.config import DEFAULT_SCHEDULE
from class_monitor.decision import AbsenceDecisionEngine
from class_monitor.exceptions import CameraError, ConfigurationError, InitializationError, MonitorBusyError
from class_monitor.matcher import SimilarityMatcher
from class_monitor.monitor import MonitoringLoop
from class_monitor.monitor_types import MonitorState
from class_monitor.schedule import ScheduleResolver

ROSTER = [make_identity("A", [1.0, 0.0]), make_identity("B", [0.0, 1.0])]


def build_loop(engine, clock, frame, lookups=None, sink=None, frame_source=None, roster=None, interval=10.0):
    lookups = lookups if lookups is not None else FakeLookups()
    return MonitoringLoop(
        engine=engine,
        resolver=ScheduleResolver(DEFAULT_SCHEDULE),
        matcher=SimilarityMatcher(threshold=0.7),
        decision_engine=AbsenceDecisionEngine(),
        roster=roster or (lambda: ROSTER),
        lookups=lookups,
        sink=sink if sink is not None else RecordingSink(lookups),
        frame_source=frame_source or (lambda: frame),
        interval_seconds=interval,
        clock=clock,
    )


def test_tick_emits_alert_for_unexcused_match(class_time, frame):
    lookups = FakeLookups()
    sink = RecordingSink(lookups)
    loop = build_loop(FakeEngine([make_probe([0.99, 0.01])]), class_time, frame, lookups, sink)

    result = loop.tick()

    assert not result.skipped
    assert result.schedule.class_hour == "09:00:00"
    assert [m.identity.identity_id for m in result.matches] == ["A"]
    assert result.emitted == 1
    assert sink.alerts[0].identity.identity_id == "A"
    assert loop.last_result is result


def test_second_tick_does_not_repeat_alert(class_time, frame):
    lookups = FakeLookups()
    sink = RecordingSink(lookups)
    loop = build_loop(FakeEngine([make_probe([0.99, 0.01])]), class_time, frame, lookups, sink)

    loop.tick()
    second = loop.tick()

    assert len(sink.alerts) == 1
    assert second.alerts == []


def test_break_skips_capture_entirely(break_time, frame):
    engine = FakeEngine([make_probe([0.99, 0.01])])
    captured = []
    loop = build_loop(engine, break_time, frame, frame_source=lambda: captured.append(1) or frame)

    result = loop.tick()

    assert result.skipped_reason == "break"
    assert captured == []
    assert engine.extract_calls == 0


def test_outside_schedule_skips_capture(frame):
    engine = FakeEngine([make_probe([0.99, 0.01])])
    loop = build_loop(engine, FixedClock(datetime(2025, 9, 2, 18, 0)), frame)

    assert loop.tick().skipped_reason == "no active class"
    assert engine.extract_calls == 0


def test_frame_failure_is_recoverable(class_time, frame):
    def broken_camera():
        raise CameraError("camera unplugged")

    loop = build_loop(FakeEngine([make_probe([0.99, 0.01])]), class_time, frame, frame_source=broken_camera)
    assert loop.tick().skipped_reason == "frame unavailable"


def test_sink_failure_does_not_stop_remaining_alerts(class_time, frame):
    class FlakySink:
        def __init__(self):
            self.alerts = []

        def emit(self, alert):
            if alert.identity.identity_id == "A":
                raise RuntimeError("store offline")
            self.alerts.append(alert)

    sink = FlakySink()
    probes = [make_probe([1.0, 0.0]), make_probe([0.0, 1.0])]
    loop = build_loop(FakeEngine(probes), class_time, frame, sink=sink)

    result = loop.tick()

    assert len(result.alerts) == 2
    assert result.emitted == 1
    assert [a.identity.identity_id for a in sink.alerts] == ["B"]


def test_roster_failure_skips_pass(class_time, frame):
    def roster():
        raise RuntimeError("roster offline")

    loop = build_loop(FakeEngine([make_probe([1.0, 0.0])]), class_time, frame, roster=roster)
    assert loop.tick().skipped_reason == "roster unavailable"


def test_tick_is_dropped_while_a_pass_is_running(class_time, frame):
    loop = build_loop(FakeEngine([make_probe([1.0, 0.0])]), class_time, frame)
    loop._processing.acquire()
    try:
        assert loop.is_processing
        assert loop.tick().skipped_reason == "busy"
    finally:
        loop._processing.release()


def test_manual_capture_rejected_while_processing(class_time, frame):
    loop = build_loop(FakeEngine([make_probe([1.0, 0.0])]), class_time, frame)
    loop._processing.acquire()
    try:
        with pytest.raises(MonitorBusyError):
            loop.capture_once(frame)
    finally:
        loop._processing.release()


def test_manual_capture_uses_given_frame(class_time, frame):
    engine = FakeEngine([make_probe([1.0, 0.0])])

    def no_camera():
        raise AssertionError("frame source should not be used")

    loop = build_loop(engine, class_time, frame, frame_source=no_camera)
    result = loop.capture_once(frame)

    assert engine.initialized
    assert result.emitted == 1


def test_start_failure_returns_to_idle(class_time, frame):
    loop = build_loop(FakeEngine(fail_init=True), class_time, frame)

    with pytest.raises(InitializationError):
        loop.start()
    assert loop.state is MonitorState.IDLE


def test_concurrent_starts_initialize_once(class_time, frame):
    engine = FakeEngine(init_delay=0.2)
    loop = build_loop(engine, class_time, frame, interval=60.0)

    threads = [threading.Thread(target=loop.start) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    try:
        assert engine.init_calls == 1
        assert loop.state is MonitorState.ACTIVE
    finally:
        loop.stop(wait=True)


def test_stop_cancels_future_ticks(class_time, frame):
    engine = FakeEngine([make_probe([1.0, 0.0])])
    loop = build_loop(engine, class_time, frame, interval=0.05)

    loop.start()
    deadline = time.monotonic() + 2.0
    while engine.extract_calls == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    loop.stop(wait=True)

    assert loop.state is MonitorState.STOPPED
    calls = engine.extract_calls
    assert calls >= 1
    time.sleep(0.2)
    assert engine.extract_calls == calls


def test_stopped_loop_can_restart(class_time, frame):
    loop = build_loop(FakeEngine(), class_time, frame, interval=60.0)
    loop.start()
    loop.stop(wait=True)
    loop.start()
    try:
        assert loop.state is MonitorState.ACTIVE
    finally:
        loop.stop(wait=True)


def test_interval_must_be_positive(class_time, frame):
    with pytest.raises(ConfigurationError):
        build_loop(FakeEngine(), class_time, frame, interval=0)


class GatedEngine(FakeEngine):
    def __init__(self, probes):
        super().__init__(probes)
        self.entered = threading.Event()
        self.gate = threading.Event()

    def extract(self, image):
        self.entered.set()
        self.gate.wait(timeout=5.0)
        return super().extract(image)


def test_stop_during_pass_lets_it_finish_without_new_ticks(class_time, frame):
    engine = GatedEngine([make_probe([1.0, 0.0])])
    lookups = FakeLookups()
    sink = RecordingSink(lookups)
    loop = build_loop(engine, class_time, frame, lookups, sink, interval=0.05)

    loop.start()
    assert engine.entered.wait(timeout=2.0)

    began = time.monotonic()
    loop.stop()
    assert time.monotonic() - began < 0.5
    assert loop.state is MonitorState.STOPPED
    assert loop.is_processing

    engine.gate.set()
    deadline = time.monotonic() + 2.0
    while loop.is_processing and time.monotonic() < deadline:
        time.sleep(0.01)
    time.sleep(0.2)

    assert [a.identity.identity_id for a in sink.alerts] == ["A"]
    assert engine.extract_calls == 1
    assert loop.last_result.emitted == 1


def test_duplicate_slot_reported_by_sink_is_not_counted(class_time, frame):
    class DuplicateSink:
        def __init__(self):
            self.alerts = []

        def emit(self, alert):
            self.alerts.append(alert)
            return False

    sink = DuplicateSink()
    loop = build_loop(FakeEngine([make_probe([1.0, 0.0])]), class_time, frame, sink=sink)

    result = loop.tick()

    assert len(sink.alerts) == 1
    assert len(result.alerts) == 1
    assert result.emitted == 0


def test_concurrent_starts_all_see_initialization_failure(class_time, frame):
    engine = FakeEngine(fail_init=True, init_delay=0.1)
    loop = build_loop(engine, class_time, frame, interval=60.0)
    errors = []

    def start():
        try:
            loop.start()
        except InitializationError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=start) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(errors) == 3
    assert loop.state is MonitorState.IDLE
