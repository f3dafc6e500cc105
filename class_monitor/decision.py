from __future__ import annotations

from datetime import date
from typing import List, Optional, Sequence

from .logger import setup_logger
from .monitor_types import AlertEvent, AttendanceLookup, Match


def absence_message(display_name: str) -> str:
    return f"{display_name} detected without attendance or duty leave"


class AbsenceDecisionEngine:
    def __init__(self):
        self.logger = setup_logger(self.__class__.__name__)

    def decide(
        self,
        matches: Sequence[Match],
        class_hour: Optional[str],
        on_date: date,
        is_break: bool,
        lookups: AttendanceLookup,
    ) -> List[AlertEvent]:
        if is_break or not class_hour:
            return []

        alerts: List[AlertEvent] = []
        for match in matches:
            identity = match.identity
            try:
                if lookups.exists_valid_excuse(identity.identity_id, on_date, class_hour):
                    continue
                if lookups.exists_notification(identity.identity_id, on_date, class_hour):
                    self.logger.debug(
                        "Alert already recorded for %s at %s %s", identity.external_id, on_date, class_hour
                    )
                    continue
            except Exception:
                # Retried on the next pass.
                self.logger.exception(
                    "Attendance lookup failed for %s (%s); skipping this pass",
                    identity.display_name,
                    identity.external_id,
                )
                continue

            alerts.append(
                AlertEvent(
                    identity=identity,
                    message=absence_message(identity.display_name),
                    class_hour=class_hour,
                    date=on_date,
                    confidence=match.confidence,
                )
            )
            self.logger.info(
                "Absence alert for %s (%s) at class hour %s, confidence %.3f",
                identity.display_name,
                identity.external_id,
                class_hour,
                match.confidence,
            )
        return alerts
