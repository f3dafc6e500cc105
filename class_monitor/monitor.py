from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Callable, Optional

import numpy as np

from .config import MONITOR_INTERVAL_SECONDS
from .decision import AbsenceDecisionEngine
from .exceptions import CameraError, ConfigurationError, InitializationError, MonitorBusyError, MonitorError
from .face_engine import FaceEngine
from .logger import setup_logger
from .matcher import SimilarityMatcher
from .monitor_types import (
    AlertSink,
    AttendanceLookup,
    FrameSource,
    MonitorState,
    PassResult,
    RosterProvider,
    ScheduleState,
)
from .schedule import ScheduleResolver


class MonitoringLoop:
    """Periodic capture -> detect -> embed -> match -> decide pipeline.

    One pass runs at a time. Automatic ticks that fire while a pass is in
    flight are dropped, and manual captures requested during a pass are
    rejected with MonitorBusyError. `stop()` cancels future ticks without
    interrupting the current pass.
    """

    def __init__(
        self,
        engine: FaceEngine,
        resolver: ScheduleResolver,
        matcher: SimilarityMatcher,
        decision_engine: AbsenceDecisionEngine,
        roster: RosterProvider,
        lookups: AttendanceLookup,
        sink: AlertSink,
        frame_source: FrameSource,
        interval_seconds: float = MONITOR_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if interval_seconds <= 0:
            raise ConfigurationError(f"Monitoring interval must be positive, got {interval_seconds}.")

        self.engine = engine
        self.resolver = resolver
        self.matcher = matcher
        self.decision_engine = decision_engine
        self.roster = roster
        self.lookups = lookups
        self.sink = sink
        self.frame_source = frame_source
        self.interval_seconds = float(interval_seconds)
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)

        self._state = MonitorState.IDLE
        self._state_lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._processing = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self.last_result: Optional[PassResult] = None

    @property
    def state(self) -> MonitorState:
        with self._state_lock:
            return self._state

    @property
    def is_processing(self) -> bool:
        return self._processing.locked()

    def start(self) -> None:
        # Concurrent callers wait here and see the first caller's outcome.
        with self._start_lock:
            with self._state_lock:
                if self._state is MonitorState.ACTIVE:
                    return
                self._state = MonitorState.INITIALIZING
            self._start()

    def _start(self) -> None:
        self.logger.info("Starting classroom monitoring")
        try:
            self.engine.initialize()
        except MonitorError:
            self._reset_after_failed_start()
            raise
        except Exception as exc:
            self._reset_after_failed_start()
            raise InitializationError(f"Cannot start monitoring: {exc}") from exc

        with self._state_lock:
            if self._state is not MonitorState.INITIALIZING:
                # stop() arrived while the models were loading.
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._worker = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="class-monitor",
                daemon=True,
            )
            self._state = MonitorState.ACTIVE
            self._worker.start()

        self.logger.info("Monitoring active, interval %.1fs", self.interval_seconds)

    def stop(self, wait: bool = False, timeout: float = 5.0) -> None:
        with self._state_lock:
            previous = self._state
            self._state = MonitorState.STOPPED
            stop_event = self._stop_event
            worker = self._worker
            self._worker = None

        stop_event.set()
        if wait and worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
        if previous is not MonitorState.STOPPED:
            self.logger.info("Monitoring stopped")

    def tick(self) -> PassResult:
        now = self.clock()
        schedule = self.resolver.resolve(now)
        if not schedule.active:
            reason = "break" if schedule.is_break else "no active class"
            self.logger.debug("Tick at %s suppressed: %s", now.strftime("%H:%M"), reason)
            return self._finish(PassResult(started_at=now, schedule=schedule, skipped_reason=reason))

        if not self._processing.acquire(blocking=False):
            self.logger.debug("Previous pass still running; tick dropped")
            return PassResult(started_at=now, schedule=schedule, skipped_reason="busy")

        try:
            return self._run_pass(now, schedule)
        finally:
            self._processing.release()

    def capture_once(self, frame: Optional[np.ndarray] = None) -> PassResult:
        if not self._processing.acquire(blocking=False):
            raise MonitorBusyError("A recognition pass is already in progress.")

        try:
            self.engine.initialize()
            now = self.clock()
            schedule = self.resolver.resolve(now)
            if not schedule.active:
                reason = "break" if schedule.is_break else "no active class"
                self.logger.info("Manual capture ignored: %s", reason)
                return self._finish(PassResult(started_at=now, schedule=schedule, skipped_reason=reason))
            return self._run_pass(now, schedule, frame)
        finally:
            self._processing.release()

    def _run(self, stop_event: threading.Event) -> None:
        next_tick = time.monotonic()
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                self.logger.exception("Monitoring tick failed")

            next_tick += self.interval_seconds
            now = time.monotonic()
            if now > next_tick:
                missed = int((now - next_tick) // self.interval_seconds) + 1
                self.logger.warning("Pass overran the interval; dropping %d tick(s)", missed)
                next_tick += missed * self.interval_seconds
            stop_event.wait(max(0.0, next_tick - time.monotonic()))

    def _run_pass(
        self,
        now: datetime,
        schedule: ScheduleState,
        frame: Optional[np.ndarray] = None,
    ) -> PassResult:
        result = PassResult(started_at=now, schedule=schedule)

        if frame is None:
            try:
                frame = self.frame_source()
            except CameraError as exc:
                self.logger.warning("Frame acquisition failed: %s", exc)
                result.skipped_reason = "frame unavailable"
                return self._finish(result)
            except Exception:
                self.logger.exception("Frame acquisition failed")
                result.skipped_reason = "frame unavailable"
                return self._finish(result)

        if frame is None or frame.size == 0:
            self.logger.warning("Empty frame received; pass skipped")
            result.skipped_reason = "empty frame"
            return self._finish(result)

        try:
            probes = self.engine.extract(frame)
        except Exception:
            self.logger.exception("Detection failed; frame skipped")
            result.skipped_reason = "detection failed"
            return self._finish(result)

        result.regions = [probe.region for probe in probes]
        result.probe_count = len(probes)
        if not probes:
            self.logger.debug("No faces found in frame")
            return self._finish(result)

        try:
            roster = list(self.roster())
        except Exception:
            self.logger.exception("Roster lookup failed; pass skipped")
            result.skipped_reason = "roster unavailable"
            return self._finish(result)

        result.matches = self.matcher.match(probes, roster)
        result.alerts = self.decision_engine.decide(
            result.matches,
            schedule.class_hour,
            now.date(),
            schedule.is_break,
            self.lookups,
        )

        for alert in result.alerts:
            try:
                # A sink may report a duplicate slot by returning False.
                if self.sink.emit(alert) is not False:
                    result.emitted += 1
            except Exception:
                self.logger.exception("Failed to record alert for %s", alert.identity.external_id)

        self.logger.info(
            "Pass at %s (class hour %s): %d faces, %d matches, %d alerts",
            now.strftime("%H:%M:%S"),
            schedule.class_hour,
            result.probe_count,
            len(result.matches),
            result.emitted,
        )
        return self._finish(result)

    def _finish(self, result: PassResult) -> PassResult:
        self.last_result = result
        return result

    def _reset_after_failed_start(self) -> None:
        with self._state_lock:
            if self._state is MonitorState.INITIALIZING:
                self._state = MonitorState.IDLE
        self.logger.error("Monitoring could not start: model initialization failed")
