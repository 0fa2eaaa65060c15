import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from db.models import ACTIVE_STATUSES, SCHEMA_SQL, TERMINAL_STATUSES, RecordingStatus
from recorder.errors import AlreadyActiveError

_JSON_FIELDS = ("transcript_chunks",)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode(value):
    if isinstance(value, RecordingStatus):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
        return conn

    def _init_schema(self):
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._get_conn()
        try:
            cursor = conn.execute(sql, params)
        except sqlite3.Error:
            conn.rollback()
            raise
        conn.commit()
        return cursor

    def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = self._get_conn().execute(sql, params)
        row = cursor.fetchone()
        return self._decode(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = self._get_conn().execute(sql, params)
        return [self._decode(row) for row in cursor.fetchall()]

    @staticmethod
    def _decode(row: sqlite3.Row) -> dict:
        rec = dict(row)
        for field in _JSON_FIELDS:
            rec[field] = json.loads(rec[field] or "[]")
        rec["status"] = RecordingStatus(rec["status"])
        rec["renamed_after_end"] = bool(rec["renamed_after_end"])
        rec["storage"] = {
            "initialized": bool(rec.pop("storage_initialized")),
            "fileUrl": rec.pop("file_url"),
            "size": rec.pop("size"),
        }
        return rec

    @staticmethod
    def _set_clause(fields: dict) -> tuple[str, list]:
        fields = dict(fields)
        fields["updated_at"] = utcnow()
        values = []
        for key, value in fields.items():
            if key in _JSON_FIELDS:
                value = json.dumps(value)
            values.append(_encode(value))
        return ", ".join(f"{k} = ?" for k in fields), values

    # -- Recordings --

    def insert_recording(self, recording_id: str, user_id: str, title: str) -> dict:
        """Reserve the user's single active slot with a new INITIALIZING row.

        The partial unique index makes this an atomic check-and-create.
        """
        now = utcnow()
        try:
            self.execute(
                "INSERT INTO recordings (id, user_id, title, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (recording_id, user_id, title, RecordingStatus.INITIALIZING.value, now, now),
            )
        except sqlite3.IntegrityError as e:
            if "user_id" in str(e):
                raise AlreadyActiveError(user_id) from e
            raise
        return self.get_recording(recording_id)

    def get_recording(self, recording_id: str) -> dict | None:
        return self.fetchone("SELECT * FROM recordings WHERE id = ?", (recording_id,))

    def list_recordings(self, user_id: str) -> list[dict]:
        return self.fetchall(
            "SELECT * FROM recordings WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )

    def list_active_recordings(self, user_id: str) -> list[dict]:
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        return self.fetchall(
            f"SELECT * FROM recordings WHERE user_id = ? AND status IN ({placeholders}) "
            "ORDER BY created_at",
            (user_id, *(s.value for s in ACTIVE_STATUSES)),
        )

    def get_active_recording(self, user_id: str) -> dict | None:
        active = self.list_active_recordings(user_id)
        return active[0] if active else None

    def transition(self, recording_id: str, from_statuses, to_status: RecordingStatus,
                   **fields) -> bool:
        """Move a recording to ``to_status`` only if it is currently in ``from_statuses``.

        Returns True if this call performed the transition.
        """
        from_statuses = tuple(from_statuses)
        set_clause, values = self._set_clause({"status": to_status, **fields})
        placeholders = ", ".join("?" for _ in from_statuses)
        cursor = self.execute(
            f"UPDATE recordings SET {set_clause} WHERE id = ? AND status IN ({placeholders})",
            tuple(values + [recording_id] + [_encode(s) for s in from_statuses]),
        )
        return cursor.rowcount > 0

    def rename_recording(self, recording_id: str, title: str) -> bool:
        """Set the title. A finished recording accepts exactly one rename.

        Returns False if the row is finished and its rename was already used.
        """
        terminal = ", ".join("?" for _ in TERMINAL_STATUSES)
        cursor = self.execute(
            f"UPDATE recordings SET title = ?, updated_at = ?, "
            f"renamed_after_end = CASE WHEN status IN ({terminal}) THEN 1 ELSE 0 END "
            f"WHERE id = ? AND NOT (status IN ({terminal}) AND renamed_after_end = 1)",
            (title, utcnow(), *(s.value for s in TERMINAL_STATUSES), recording_id,
             *(s.value for s in TERMINAL_STATUSES)),
        )
        return cursor.rowcount > 0

    def delete_recording(self, recording_id: str) -> bool:
        cursor = self.execute("DELETE FROM recordings WHERE id = ?", (recording_id,))
        return cursor.rowcount > 0
