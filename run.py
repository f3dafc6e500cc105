import argparse
import sys
import time
from datetime import date, datetime
from pathlib import Path

from class_monitor.camera import CameraFrameSource, ImageFileFrameSource
from class_monitor.config import CAMERA_INDEX, DB_PATH, MATCH_THRESHOLD, MONITOR_INTERVAL_SECONDS, SCHEDULE_PATH
from class_monitor.decision import AbsenceDecisionEngine
from class_monitor.enrollment import EnrollmentService
from class_monitor.exceptions import MonitorError
from class_monitor.face_engine import FaceEngine
from class_monitor.logger import setup_logger
from class_monitor.matcher import SimilarityMatcher
from class_monitor.monitor import MonitoringLoop
from class_monitor.monitor_types import MonitorState
from class_monitor.schedule import ScheduleResolver
from class_monitor.store import RecordStore


def _parse_date(raw: str) -> date:
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {raw!r}") from exc


def _parse_clock(raw: str) -> datetime:
    try:
        return datetime.combine(date.today(), datetime.strptime(raw, "%H:%M").time())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected HH:MM, got {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Classroom attendance monitor")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="sqlite database path")
    parser.add_argument("--schedule", type=Path, default=SCHEDULE_PATH, help="JSON class schedule file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    monitor = subparsers.add_parser("monitor", help="Run the periodic recognition loop")
    source = monitor.add_mutually_exclusive_group()
    source.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Camera index")
    source.add_argument("--image", type=Path, default=None, help="Use a still image instead of a camera")
    monitor.add_argument(
        "--interval",
        type=float,
        default=MONITOR_INTERVAL_SECONDS,
        help="Seconds between recognition passes",
    )
    monitor.add_argument(
        "--threshold",
        type=float,
        default=MATCH_THRESHOLD,
        help="Cosine similarity threshold for a match",
    )
    monitor.add_argument("--once", action="store_true", help="Run a single manual capture and exit")

    enroll = subparsers.add_parser("enroll", help="Add or update a student with an optional photo")
    enroll.add_argument("--id", required=True, dest="student_id", help="Student ID")
    enroll.add_argument("--name", required=True, help="Student name")
    enroll.add_argument("--photo", type=Path, default=None, help="Photo used for the reference embedding")

    list_cmd = subparsers.add_parser("list-students", help="List enrolled students")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    delete = subparsers.add_parser("delete-student", help="Remove a student and their records")
    delete.add_argument("--id", required=True, dest="student_id", help="Student ID")

    mark = subparsers.add_parser("mark", help="Mark attendance for the current or given class hour")
    mark.add_argument("--id", required=True, dest="student_id", help="Student ID")
    mark.add_argument("--status", choices=("present", "absent"), default="present")
    mark.add_argument("--date", type=_parse_date, default=None, help="YYYY-MM-DD, defaults to today")
    mark.add_argument("--class-hour", default=None, help="Class-hour label, defaults to the current one")

    leave = subparsers.add_parser("duty-leave", help="Grant duty leave for a class hour")
    leave.add_argument("--id", required=True, dest="student_id", help="Student ID")
    leave.add_argument("--reason", default=None)
    leave.add_argument("--date", type=_parse_date, default=None, help="YYYY-MM-DD, defaults to today")
    leave.add_argument("--class-hour", default=None, help="Class-hour label, defaults to the current one")

    alerts = subparsers.add_parser("alerts", help="Show alerts for a day")
    alerts.add_argument("--date", type=_parse_date, default=None, help="YYYY-MM-DD, defaults to today")
    alerts.add_argument("--unread", action="store_true", help="Only unread alerts")

    read = subparsers.add_parser("mark-read", help="Mark an alert as read")
    read.add_argument("notification_id", type=int)

    schedule = subparsers.add_parser("schedule", help="Show the class hour resolved for a time")
    schedule.add_argument("--at", type=_parse_clock, default=None, help="HH:MM, defaults to now")

    return parser


def _resolve_slot(resolver: ScheduleResolver, args: argparse.Namespace) -> tuple[date, str]:
    on_date = args.date or date.today()
    class_hour = args.class_hour
    if class_hour is None:
        state = resolver.resolve(datetime.now())
        if not state.active:
            raise MonitorError("No active class hour right now; pass --class-hour explicitly.")
        class_hour = state.class_hour
    return on_date, class_hour


def _require_student(store: RecordStore, student_id: str):
    identity = store.get_identity(student_id)
    if identity is None:
        raise MonitorError(f"Unknown student {student_id}.")
    return identity


def run_monitor(args: argparse.Namespace, store: RecordStore, resolver: ScheduleResolver) -> int:
    frame_source = ImageFileFrameSource(args.image) if args.image else CameraFrameSource(args.camera)
    loop = MonitoringLoop(
        engine=FaceEngine(),
        resolver=resolver,
        matcher=SimilarityMatcher(threshold=args.threshold),
        decision_engine=AbsenceDecisionEngine(),
        roster=store.list_identities,
        lookups=store,
        sink=store,
        frame_source=frame_source,
        interval_seconds=args.interval,
    )

    try:
        if args.once:
            result = loop.capture_once()
            if result.skipped:
                print(f"Capture skipped: {result.skipped_reason}")
            for alert in result.alerts:
                print(f"ALERT {alert.class_hour} {alert.identity.external_id}: {alert.message} ({alert.confidence:.3f})")
            print(f"Faces: {result.probe_count}, matches: {len(result.matches)}, alerts: {result.emitted}")
            return 0

        loop.start()
        print("Monitoring started. Press Ctrl+C to stop.")
        while loop.state is MonitorState.ACTIVE:
            time.sleep(0.5)
        return 0
    finally:
        loop.stop(wait=True)
        if isinstance(frame_source, CameraFrameSource):
            frame_source.close()


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        store = RecordStore(args.db)
        resolver = ScheduleResolver.from_config(args.schedule)

        if args.command == "monitor":
            return run_monitor(args, store, resolver)

        if args.command == "enroll":
            service = EnrollmentService(store=store, engine=FaceEngine())
            identity = service.enroll(args.student_id, args.name, args.photo)
            suffix = "" if identity.has_embedding else " (no face embedding)"
            print(f"Enrolled {identity.external_id} ({identity.display_name}){suffix}.")
            return 0

        if args.command == "list-students":
            identities = store.list_identities()
            if not identities:
                print("No students enrolled.")
                return 0

            print(f"{'Student ID':<16} {'Face':<6} {'Name'}")
            print("-" * 52)
            for identity in identities[: args.limit]:
                face = "yes" if identity.has_embedding else "no"
                print(f"{identity.external_id:<16} {face:<6} {identity.display_name}")
            return 0

        if args.command == "delete-student":
            if store.delete_student(args.student_id):
                print(f"Deleted {args.student_id}.")
                return 0
            print(f"Unknown student {args.student_id}.")
            return 1

        if args.command == "mark":
            identity = _require_student(store, args.student_id)
            on_date, class_hour = _resolve_slot(resolver, args)
            store.mark_attendance(identity.identity_id, on_date, class_hour, args.status)
            print(f"Marked {identity.external_id} {args.status} for {on_date} {class_hour}.")
            return 0

        if args.command == "duty-leave":
            identity = _require_student(store, args.student_id)
            on_date, class_hour = _resolve_slot(resolver, args)
            store.grant_duty_leave(identity.identity_id, on_date, class_hour, args.reason)
            print(f"Duty leave granted to {identity.external_id} for {on_date} {class_hour}.")
            return 0

        if args.command == "alerts":
            on_date = args.date or date.today()
            records = store.list_notifications(on_date, unread_only=args.unread)
            if not records:
                print(f"No alerts for {on_date}.")
                return 0

            for record in records:
                flag = " " if record.is_read else "*"
                print(f"{flag} #{record.id:<5} {record.class_hour} {record.external_id:<12} {record.message}")
            return 0

        if args.command == "mark-read":
            if store.mark_notification_read(args.notification_id):
                print(f"Alert #{args.notification_id} marked as read.")
                return 0
            print(f"Alert #{args.notification_id} not found or already read.")
            return 1

        if args.command == "schedule":
            moment = args.at or datetime.now()
            state = resolver.resolve(moment)
            if state.class_hour is None:
                print(f"{moment:%H:%M}: no active class")
            elif state.is_break:
                print(f"{moment:%H:%M}: break ({state.class_hour}), monitoring paused")
            else:
                print(f"{moment:%H:%M}: class hour {state.class_hour}")
            return 0

    except MonitorError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
