import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

import numpy as np

from .exceptions import DatabaseError
from .monitor_types import AlertEvent, Identity

ATTENDANCE_STATUSES = ("present", "absent")


@dataclass
class NotificationRecord:
    id: int
    student_id: str
    external_id: str
    name: str
    message: str
    class_hour: str
    date: str
    confidence: Optional[float]
    detected_at: str
    is_read: bool


class RecordStore:
    """sqlite3-backed roster, attendance, duty-leave and notification records.

    Implements the attendance lookup, alert sink and roster provider the
    monitoring loop consumes.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def __call__(self) -> List[Identity]:
        return self.list_identities()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS students (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        student_id TEXT NOT NULL UNIQUE,
                        photo_path TEXT,
                        face_encoding BLOB,
                        encoding_dim INTEGER,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS attendance_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                        date TEXT NOT NULL,
                        class_hour TEXT NOT NULL,
                        status TEXT NOT NULL CHECK (status IN ('present', 'absent')),
                        marked_at TEXT NOT NULL,
                        UNIQUE(student_id, date, class_hour)
                    );

                    CREATE TABLE IF NOT EXISTS duty_leaves (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                        date TEXT NOT NULL,
                        class_hour TEXT NOT NULL,
                        reason TEXT,
                        approved_at TEXT NOT NULL,
                        UNIQUE(student_id, date, class_hour)
                    );

                    CREATE TABLE IF NOT EXISTS notifications (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                        message TEXT NOT NULL,
                        date TEXT NOT NULL,
                        class_hour TEXT NOT NULL,
                        confidence REAL,
                        detected_at TEXT NOT NULL,
                        is_read INTEGER NOT NULL DEFAULT 0,
                        -- One alert per student per class hour.
                        UNIQUE(student_id, date, class_hour)
                    );
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    # Roster

    def upsert_student(
        self,
        external_id: str,
        name: str,
        embedding: Optional[np.ndarray] = None,
        photo_path: Optional[str] = None,
    ) -> Identity:
        external_id = external_id.strip()
        name = name.strip()
        if not external_id or not name:
            raise DatabaseError("Student id and name are required.")

        blob = None
        dim = None
        vector = None
        if embedding is not None:
            vector = np.asarray(embedding, dtype=np.float32)
            if vector.ndim != 1 or vector.size == 0:
                raise DatabaseError("Encoding must be a non-empty 1D vector.")
            blob = vector.tobytes()
            dim = int(vector.size)

        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO students (
                        id, name, student_id, photo_path, face_encoding, encoding_dim, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(student_id) DO UPDATE SET
                        name = excluded.name,
                        photo_path = COALESCE(excluded.photo_path, students.photo_path),
                        face_encoding = COALESCE(excluded.face_encoding, students.face_encoding),
                        encoding_dim = COALESCE(excluded.encoding_dim, students.encoding_dim),
                        updated_at = excluded.updated_at
                    """,
                    (uuid.uuid4().hex, name, external_id, photo_path, blob, dim, now, now),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save student {external_id}: {exc}") from exc

        identity = self.get_identity(external_id)
        if identity is None:
            raise DatabaseError(f"Student {external_id} vanished after save.")
        return identity

    def get_identity(self, external_id: str) -> Optional[Identity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, name, student_id, face_encoding, encoding_dim
                    FROM students
                    WHERE student_id = ?
                    """,
                    (external_id.strip(),),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load student {external_id}: {exc}") from exc
        return self._row_to_identity(row) if row is not None else None

    def list_identities(self) -> List[Identity]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, name, student_id, face_encoding, encoding_dim
                    FROM students
                    ORDER BY student_id ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load students: {exc}") from exc
        return [self._row_to_identity(row) for row in rows]

    def delete_student(self, external_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM students WHERE student_id = ?", (external_id.strip(),))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete student {external_id}: {exc}") from exc

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> Identity:
        embedding = None
        if row["face_encoding"] is not None and row["encoding_dim"]:
            embedding = np.frombuffer(row["face_encoding"], dtype=np.float32, count=row["encoding_dim"]).copy()
        return Identity(
            identity_id=row["id"],
            display_name=row["name"],
            external_id=row["student_id"],
            reference_embedding=embedding,
        )

    # Attendance and duty leave

    def mark_attendance(self, identity_id: str, on_date: date, class_hour: str, status: str) -> None:
        if status not in ATTENDANCE_STATUSES:
            raise DatabaseError(f"Unknown attendance status {status!r}.")

        now = datetime.now().isoformat(timespec="seconds")
        slot = (identity_id, on_date.isoformat(), class_hour)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO attendance_records (student_id, date, class_hour, status, marked_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(student_id, date, class_hour) DO UPDATE SET
                        status = excluded.status,
                        marked_at = excluded.marked_at
                    """,
                    slot + (status, now),
                )
                if status == "present":
                    conn.execute(
                        "DELETE FROM duty_leaves WHERE student_id = ? AND date = ? AND class_hour = ?",
                        slot,
                    )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to mark attendance for {identity_id}: {exc}") from exc

    def grant_duty_leave(
        self,
        identity_id: str,
        on_date: date,
        class_hour: str,
        reason: Optional[str] = None,
    ) -> None:
        now = datetime.now().isoformat(timespec="seconds")
        slot = (identity_id, on_date.isoformat(), class_hour)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO duty_leaves (student_id, date, class_hour, reason, approved_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(student_id, date, class_hour) DO UPDATE SET
                        reason = excluded.reason,
                        approved_at = excluded.approved_at
                    """,
                    slot + (reason, now),
                )
                conn.execute(
                    "DELETE FROM attendance_records WHERE student_id = ? AND date = ? AND class_hour = ?",
                    slot,
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to grant duty leave for {identity_id}: {exc}") from exc

    def exists_valid_excuse(self, identity_id: str, on_date: date, class_hour: str) -> bool:
        slot = (identity_id, on_date.isoformat(), class_hour)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT 1 FROM attendance_records
                    WHERE student_id = ? AND date = ? AND class_hour = ? AND status = 'present'
                    UNION ALL
                    SELECT 1 FROM duty_leaves
                    WHERE student_id = ? AND date = ? AND class_hour = ?
                    LIMIT 1
                    """,
                    slot + slot,
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to query attendance for {identity_id}: {exc}") from exc
        return row is not None

    # Notifications

    def exists_notification(self, identity_id: str, on_date: date, class_hour: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT 1 FROM notifications
                    WHERE student_id = ? AND date = ? AND class_hour = ?
                    LIMIT 1
                    """,
                    (identity_id, on_date.isoformat(), class_hour),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to query notifications for {identity_id}: {exc}") from exc
        return row is not None

    def emit(self, alert: AlertEvent) -> bool:
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO notifications (
                        student_id, message, date, class_hour, confidence, detected_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        alert.identity.identity_id,
                        alert.message,
                        alert.date.isoformat(),
                        alert.class_hour,
                        float(alert.confidence),
                        now,
                    ),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save alert for {alert.identity.external_id}: {exc}") from exc

    def list_notifications(self, on_date: Optional[date] = None, unread_only: bool = False) -> List[NotificationRecord]:
        sql = """
            SELECT n.id, n.student_id, s.student_id AS external_id, s.name, n.message,
                   n.class_hour, n.date, n.confidence, n.detected_at, n.is_read
            FROM notifications n
            JOIN students s ON s.id = n.student_id
            WHERE 1=1
        """
        params: List[object] = []
        if on_date is not None:
            sql += " AND n.date = ?"
            params.append(on_date.isoformat())
        if unread_only:
            sql += " AND n.is_read = 0"
        sql += " ORDER BY n.detected_at DESC, n.id DESC"

        try:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load notifications: {exc}") from exc

        return [
            NotificationRecord(
                id=row["id"],
                student_id=row["student_id"],
                external_id=row["external_id"],
                name=row["name"],
                message=row["message"],
                class_hour=row["class_hour"],
                date=row["date"],
                confidence=row["confidence"],
                detected_at=row["detected_at"],
                is_read=bool(row["is_read"]),
            )
            for row in rows
        ]

    def mark_notification_read(self, notification_id: int) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE notifications SET is_read = 1 WHERE id = ? AND is_read = 0",
                    (notification_id,),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update notification {notification_id}: {exc}") from exc
