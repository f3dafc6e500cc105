from __future__ import annotations

import json
from datetime import datetime, time
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import DEFAULT_SCHEDULE, SCHEDULE_PATH
from .exceptions import ConfigurationError
from .logger import setup_logger
from .monitor_types import ClassHourWindow, ScheduleState

WindowEntry = Union[ClassHourWindow, Sequence[Any], Mapping[str, Any]]


class ScheduleWindowModel(BaseModel):
    start: time
    end: time
    label: str = Field(min_length=1)
    is_break: bool = False

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_clock(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return datetime.strptime(value.strip(), "%H:%M").time()
            except ValueError:
                return value
        return value

    @field_validator("label")
    @classmethod
    def _strip_label(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("label cannot be blank")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "ScheduleWindowModel":
        if self.start > self.end:
            raise ValueError(f"window {self.label!r} starts after it ends")
        return self

    def to_window(self) -> ClassHourWindow:
        return ClassHourWindow(
            start=self.start.replace(second=0, microsecond=0),
            end=self.end.replace(second=0, microsecond=0),
            label=self.label,
            is_break=self.is_break,
        )


class ScheduleModel(BaseModel):
    windows: List[ScheduleWindowModel] = Field(min_length=1)


def _as_mapping(entry: WindowEntry) -> Mapping[str, Any]:
    if isinstance(entry, ClassHourWindow):
        return {"start": entry.start, "end": entry.end, "label": entry.label, "is_break": entry.is_break}
    if isinstance(entry, Mapping):
        return entry
    if isinstance(entry, (list, tuple)) and len(entry) in (3, 4):
        keys = ("start", "end", "label", "is_break")
        return dict(zip(keys, entry))
    raise ConfigurationError(f"Unsupported schedule window definition: {entry!r}")


def parse_windows(entries: Iterable[WindowEntry]) -> List[ClassHourWindow]:
    try:
        model = ScheduleModel(windows=[_as_mapping(entry) for entry in entries])
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid class schedule: {exc}") from exc
    return [window.to_window() for window in model.windows]


def load_schedule(path: Path) -> List[ClassHourWindow]:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read schedule file {path}: {exc}") from exc

    if isinstance(payload, Mapping):
        payload = payload.get("windows")
    if not isinstance(payload, list):
        raise ConfigurationError(f"Schedule file {path} must contain a list of windows.")
    return parse_windows(payload)


class ScheduleResolver:
    """Maps wall-clock time onto the configured class-hour windows.

    Windows are checked in configured order and the first one whose
    inclusive [start, end] range contains the minute wins, so adjacent
    windows sharing a boundary minute resolve to the earlier one.
    """

    def __init__(self, windows: Iterable[WindowEntry]):
        self.logger = setup_logger(self.__class__.__name__)
        self._lock = Lock()
        self._windows: tuple[ClassHourWindow, ...] = ()
        self.refresh(windows)

    @classmethod
    def from_config(cls, path: Optional[Path] = SCHEDULE_PATH) -> "ScheduleResolver":
        if path is not None:
            return cls(load_schedule(path))
        return cls(DEFAULT_SCHEDULE)

    @property
    def windows(self) -> tuple[ClassHourWindow, ...]:
        with self._lock:
            return self._windows

    def refresh(self, windows: Iterable[WindowEntry]) -> None:
        parsed = tuple(parse_windows(windows))
        self._warn_on_overlaps(parsed)
        with self._lock:
            self._windows = parsed
        self.logger.info("Class schedule loaded with %d windows", len(parsed))

    def resolve(self, now: Union[datetime, time]) -> ScheduleState:
        moment = now.time() if isinstance(now, datetime) else now
        moment = moment.replace(second=0, microsecond=0, tzinfo=None)

        for window in self.windows:
            if window.contains(moment):
                return ScheduleState(class_hour=window.label, is_break=window.is_break, window=window)
        return ScheduleState()

    def _warn_on_overlaps(self, windows: Sequence[ClassHourWindow]) -> None:
        for idx, first in enumerate(windows):
            for second in windows[idx + 1:]:
                overlap_start = max(first.start, second.start)
                overlap_end = min(first.end, second.end)
                if overlap_start < overlap_end:
                    self.logger.warning(
                        "Schedule windows %s and %s overlap between %s and %s; %s takes precedence",
                        first.label,
                        second.label,
                        overlap_start.strftime("%H:%M"),
                        overlap_end.strftime("%H:%M"),
                        first.label,
                    )
