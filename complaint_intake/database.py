"""
SQLite-backed persistence layer using aiosqlite.
Holds calls, complaints and the complaint status history.
"""

from __future__ import annotations

import enum

import aiosqlite
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from complaint_intake.models import (
    Call,
    CallStatus,
    Complaint,
    ComplaintHistoryEntry,
    ComplaintStatus,
    Priority,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS calls (
    id              TEXT PRIMARY KEY,
    call_sid        TEXT NOT NULL,
    phone_number    TEXT NOT NULL DEFAULT 'unknown',
    timestamp       TEXT NOT NULL,
    duration        INTEGER,
    status          TEXT NOT NULL DEFAULT 'in_progress',
    audio_url       TEXT,
    recording_sid   TEXT,
    has_complaint   INTEGER NOT NULL DEFAULT 0,
    notes           TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE(call_sid)
);

CREATE TABLE IF NOT EXISTS complaints (
    id              TEXT PRIMARY KEY,
    call_id         TEXT NOT NULL REFERENCES calls(id),
    transcription   TEXT,
    status          TEXT NOT NULL DEFAULT 'new',
    category        TEXT,
    priority        TEXT NOT NULL DEFAULT 'medium',
    assigned_to     TEXT,
    resolution      TEXT,
    resolved_at     TEXT,
    summary         TEXT,
    needs_review    INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS complaint_history (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    complaint_id    TEXT NOT NULL REFERENCES complaints(id),
    user_id         TEXT,
    old_status      TEXT,
    new_status      TEXT NOT NULL,
    notes           TEXT,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calls_call_sid ON calls(call_sid);
CREATE INDEX IF NOT EXISTS idx_calls_status ON calls(status);
CREATE INDEX IF NOT EXISTS idx_complaints_call ON complaints(call_id);
CREATE INDEX IF NOT EXISTS idx_history_complaint ON complaint_history(complaint_id);
"""

# Columns callers may change through update_call().
_CALL_UPDATABLE = {
    "phone_number",
    "duration",
    "status",
    "audio_url",
    "recording_sid",
    "has_complaint",
    "notes",
}


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async SQLite wrapper for calls and complaints."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── Calls ───────────────────────────────────────────────────

    async def get_all_calls(self) -> list[Call]:
        cursor = await self._db.execute("SELECT * FROM calls ORDER BY timestamp DESC")
        rows = await cursor.fetchall()
        return [self._row_to_call(r) for r in rows]

    async def get_call_by_id(self, call_id: str) -> Optional[Call]:
        cursor = await self._db.execute("SELECT * FROM calls WHERE id = ?", (call_id,))
        row = await cursor.fetchone()
        return self._row_to_call(row) if row else None

    async def get_call_by_sid(self, call_sid: str) -> Optional[Call]:
        cursor = await self._db.execute(
            "SELECT * FROM calls WHERE call_sid = ?",
            (call_sid,),
        )
        row = await cursor.fetchone()
        return self._row_to_call(row) if row else None

    async def create_call(self, call: Call) -> Call:
        """
        Insert a call, or return the row already holding ``call.call_sid``.

        Two concurrent deliveries for the same provider call id both end up
        with the same row: the loser's insert is a no-op and it reads back
        the winner. Callers compare ``id`` to know which branch they took.
        """
        await self._db.execute(
            """
            INSERT INTO calls
                (id, call_sid, phone_number, timestamp, duration, status,
                 audio_url, recording_sid, has_complaint, notes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(call_sid) DO NOTHING
            """,
            (
                call.id,
                call.call_sid,
                call.phone_number,
                call.timestamp.isoformat(),
                call.duration,
                call.status.value,
                call.audio_url,
                call.recording_sid,
                int(call.has_complaint),
                call.notes,
                call.created_at.isoformat(),
                call.updated_at.isoformat(),
            ),
        )
        await self._db.commit()
        stored = await self.get_call_by_sid(call.call_sid)
        if stored is None:
            raise aiosqlite.IntegrityError(f"call {call.call_sid} vanished after insert")
        return stored

    async def update_call(self, call_id: str, **fields: Any) -> Optional[Call]:
        """Update the given columns of a call; returns None if it doesn't exist."""
        unknown = set(fields) - _CALL_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update call columns: {sorted(unknown)}")
        if not fields:
            return await self.get_call_by_id(call_id)

        now = datetime.utcnow().isoformat()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_db(v) for v in fields.values()] + [now, call_id]
        cursor = await self._db.execute(
            f"UPDATE calls SET {assignments}, updated_at = ? WHERE id = ?",
            params,
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_call_by_id(call_id)

    async def get_unprocessed_calls(self) -> list[Call]:
        """Completed calls that never produced a complaint (stuck in the pipeline)."""
        cursor = await self._db.execute(
            """
            SELECT * FROM calls
            WHERE status = ? AND has_complaint = 0
            ORDER BY timestamp ASC
            """,
            (CallStatus.COMPLETED.value,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_call(r) for r in rows]

    # ── Complaints ──────────────────────────────────────────────

    async def get_all_complaints(self) -> list[Complaint]:
        cursor = await self._db.execute("SELECT * FROM complaints ORDER BY created_at DESC")
        rows = await cursor.fetchall()
        return [self._row_to_complaint(r) for r in rows]

    async def get_complaint_by_id(self, complaint_id: str) -> Optional[Complaint]:
        cursor = await self._db.execute(
            "SELECT * FROM complaints WHERE id = ?",
            (complaint_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_complaint(row) if row else None

    async def get_complaints_for_call(self, call_id: str) -> list[Complaint]:
        cursor = await self._db.execute(
            "SELECT * FROM complaints WHERE call_id = ? ORDER BY created_at ASC",
            (call_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_complaint(r) for r in rows]

    async def create_complaint(self, complaint: Complaint) -> Complaint:
        await self._db.execute(
            """
            INSERT INTO complaints
                (id, call_id, transcription, status, category, priority, assigned_to,
                 resolution, resolved_at, summary, needs_review, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                complaint.id,
                complaint.call_id,
                complaint.transcription,
                complaint.status.value,
                complaint.category,
                complaint.priority.value,
                complaint.assigned_to,
                complaint.resolution,
                _to_db(complaint.resolved_at),
                complaint.summary,
                int(complaint.needs_review),
                complaint.created_at.isoformat(),
                complaint.updated_at.isoformat(),
            ),
        )
        await self._db.commit()
        return complaint

    async def update_complaint_status(
        self,
        complaint_id: str,
        new_status: ComplaintStatus,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[Complaint]:
        """Change a complaint's status and append the transition to its history."""
        current = await self.get_complaint_by_id(complaint_id)
        if current is None:
            return None

        now = datetime.utcnow()
        resolved_at = current.resolved_at
        if new_status == ComplaintStatus.RESOLVED and current.status != ComplaintStatus.RESOLVED:
            resolved_at = now

        await self._db.execute(
            """
            INSERT INTO complaint_history
                (complaint_id, user_id, old_status, new_status, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (complaint_id, user_id, current.status.value, new_status.value, notes, now.isoformat()),
        )
        await self._db.execute(
            """
            UPDATE complaints
            SET status = ?, resolved_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (new_status.value, _to_db(resolved_at), now.isoformat(), complaint_id),
        )
        await self._db.commit()
        return await self.get_complaint_by_id(complaint_id)

    async def get_complaint_history(self, complaint_id: str) -> list[ComplaintHistoryEntry]:
        cursor = await self._db.execute(
            """
            SELECT * FROM complaint_history
            WHERE complaint_id = ?
            ORDER BY id ASC
            """,
            (complaint_id,),
        )
        rows = await cursor.fetchall()
        return [
            ComplaintHistoryEntry(
                id=r["id"],
                complaint_id=r["complaint_id"],
                user_id=r["user_id"],
                old_status=ComplaintStatus(r["old_status"]) if r["old_status"] else None,
                new_status=ComplaintStatus(r["new_status"]),
                notes=r["notes"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    # ── Summary ─────────────────────────────────────────────────

    async def get_summary(self) -> dict:
        """Counts used by the operator CLI."""
        cursor = await self._db.execute(
            "SELECT status, COUNT(*) AS cnt FROM calls GROUP BY status"
        )
        calls_by_status = {r["status"]: r["cnt"] for r in await cursor.fetchall()}

        cursor = await self._db.execute(
            "SELECT status, COUNT(*) AS cnt FROM complaints GROUP BY status"
        )
        complaints_by_status = {r["status"]: r["cnt"] for r in await cursor.fetchall()}

        cursor = await self._db.execute(
            "SELECT COUNT(*) AS cnt FROM complaints WHERE needs_review = 1"
        )
        row = await cursor.fetchone()

        return {
            "total_calls": sum(calls_by_status.values()),
            "calls_by_status": calls_by_status,
            "total_complaints": sum(complaints_by_status.values()),
            "complaints_by_status": complaints_by_status,
            "complaints_needing_review": row["cnt"] if row else 0,
        }

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _row_to_call(row) -> Call:
        return Call(
            id=row["id"],
            call_sid=row["call_sid"],
            phone_number=row["phone_number"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            duration=row["duration"],
            status=CallStatus(row["status"]),
            audio_url=row["audio_url"],
            recording_sid=row["recording_sid"],
            has_complaint=bool(row["has_complaint"]),
            notes=row["notes"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_complaint(row) -> Complaint:
        return Complaint(
            id=row["id"],
            call_id=row["call_id"],
            transcription=row["transcription"],
            status=ComplaintStatus(row["status"]),
            category=row["category"],
            priority=Priority(row["priority"]),
            assigned_to=row["assigned_to"],
            resolution=row["resolution"],
            resolved_at=_parse_dt(row["resolved_at"]),
            summary=row["summary"],
            needs_review=bool(row["needs_review"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
