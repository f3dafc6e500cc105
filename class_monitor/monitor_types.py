from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence, Tuple

import numpy as np

BBox = Tuple[int, int, int, int]


@dataclass(frozen=True)
class Identity:
    identity_id: str
    display_name: str
    external_id: str
    reference_embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        # Roster collaborators may hand over plain lists.
        if self.reference_embedding is not None:
            vector = np.asarray(self.reference_embedding, dtype=np.float32).reshape(-1)
            object.__setattr__(self, "reference_embedding", vector)

    @property
    def has_embedding(self) -> bool:
        return self.reference_embedding is not None and self.reference_embedding.size > 0


@dataclass(frozen=True)
class Region:
    bbox: BBox
    score: float

    @property
    def width(self) -> int:
        return max(0, self.bbox[2] - self.bbox[0])

    @property
    def height(self) -> int:
        return max(0, self.bbox[3] - self.bbox[1])

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass
class ProbeEmbedding:
    region: Region
    vector: np.ndarray


@dataclass(frozen=True)
class Match:
    identity: Identity
    confidence: float


@dataclass(frozen=True)
class ClassHourWindow:
    start: time
    end: time
    label: str
    is_break: bool = False

    def contains(self, moment: time) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class ScheduleState:
    class_hour: Optional[str] = None
    is_break: bool = False
    window: Optional[ClassHourWindow] = None

    @property
    def active(self) -> bool:
        """True when detection should run: inside a class window that is not a break."""
        return self.class_hour is not None and not self.is_break


@dataclass(frozen=True)
class AlertEvent:
    identity: Identity
    message: str
    class_hour: str
    date: date
    confidence: float


class MonitorState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass
class PassResult:
    started_at: datetime
    schedule: ScheduleState
    regions: list[Region] = field(default_factory=list)
    probe_count: int = 0
    matches: list[Match] = field(default_factory=list)
    alerts: list[AlertEvent] = field(default_factory=list)
    emitted: int = 0
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


class AttendanceLookup(Protocol):
    def exists_valid_excuse(self, identity_id: str, on_date: date, class_hour: str) -> bool:
        ...

    def exists_notification(self, identity_id: str, on_date: date, class_hour: str) -> bool:
        ...


class AlertSink(Protocol):
    def emit(self, alert: AlertEvent) -> Optional[bool]:
        ...


RosterProvider = Callable[[], Sequence[Identity]]
FrameSource = Callable[[], np.ndarray]
