"""
Call ledger: find-or-create the Call row for a provider call id.
"""

from __future__ import annotations

from typing import Optional

import aiosqlite
import structlog

from complaint_intake.database import Database
from complaint_intake.models import Call, CallStatus
from complaint_intake.phone_utils import UNKNOWN_CALLER

log = structlog.get_logger(__name__)

SHORT_CALL_NOTE = "call too short to process"
DEFAULT_MIN_DURATION_SECONDS = 10


class CallLedgerError(RuntimeError):
    """The call row could not be written; nothing downstream can run."""

    def __init__(self, call_sid: str, message: str):
        super().__init__(message)
        self.call_sid = call_sid


def parse_duration(raw: Optional[str | int]) -> Optional[int]:
    """Twilio sends RecordingDuration as a string; unparseable values become None."""
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(float(raw.strip()))
    except (ValueError, OverflowError):
        return None


class CallLedger:
    def __init__(self, db: Database, min_duration_seconds: int = DEFAULT_MIN_DURATION_SECONDS):
        self.db = db
        self.min_duration_seconds = min_duration_seconds

    def is_short_call(self, duration_seconds: Optional[int]) -> bool:
        # An unknown duration is processed rather than dropped.
        return duration_seconds is not None and duration_seconds < self.min_duration_seconds

    async def register_incoming(self, provider_call_id: str, phone_number: str) -> Call:
        """Record a call as in_progress when it starts ringing; no-op if already known."""
        try:
            existing = await self.db.get_call_by_sid(provider_call_id)
            if existing is not None:
                return existing
            call = await self.db.create_call(
                Call(
                    call_sid=provider_call_id,
                    phone_number=phone_number,
                    status=CallStatus.IN_PROGRESS,
                )
            )
        except aiosqlite.Error as exc:
            raise CallLedgerError(provider_call_id, f"Failed to register call: {exc}") from exc
        log.info("call_registered", call_id=call.id, call_sid=provider_call_id)
        return call

    async def upsert_call(
        self,
        provider_call_id: str,
        phone_number: str,
        duration_seconds: Optional[int],
        recording_ref: Optional[str],
        recording_provider_id: Optional[str],
    ) -> Call:
        """
        Return the single Call row for ``provider_call_id``, creating it on
        first sight and refreshing duration/status/recording fields after.

        Safe to call any number of times for the same id. ``has_complaint``
        is never touched here.
        """
        short = self.is_short_call(duration_seconds)
        status = CallStatus.FAILED if short else CallStatus.COMPLETED

        try:
            existing = await self.db.get_call_by_sid(provider_call_id)
            if existing is None:
                candidate = Call(
                    call_sid=provider_call_id,
                    phone_number=phone_number,
                    duration=duration_seconds,
                    status=status,
                    audio_url=recording_ref,
                    recording_sid=recording_provider_id,
                    notes=SHORT_CALL_NOTE if short else None,
                )
                stored = await self.db.create_call(candidate)
                if stored.id == candidate.id:
                    log.info(
                        "call_created",
                        call_id=stored.id,
                        status=stored.status.value,
                        duration=duration_seconds,
                    )
                    return stored
                # Lost an insert race against a concurrent delivery.
                log.info("call_insert_conflict", call_id=stored.id)
                existing = stored

            duration = duration_seconds if duration_seconds is not None else existing.duration
            short = self.is_short_call(duration)
            status = CallStatus.FAILED if short else CallStatus.COMPLETED
            if short:
                notes = SHORT_CALL_NOTE
            elif existing.notes == SHORT_CALL_NOTE:
                notes = None
            else:
                notes = existing.notes

            updated = await self.db.update_call(
                existing.id,
                phone_number=(
                    existing.phone_number if phone_number == UNKNOWN_CALLER else phone_number
                ),
                duration=duration,
                status=status,
                audio_url=recording_ref or existing.audio_url,
                recording_sid=recording_provider_id or existing.recording_sid,
                notes=notes,
            )
        except aiosqlite.Error as exc:
            raise CallLedgerError(provider_call_id, f"Failed to upsert call: {exc}") from exc

        if updated is None:
            raise CallLedgerError(provider_call_id, "Call disappeared during update")

        log.info(
            "call_updated",
            call_id=updated.id,
            status=updated.status.value,
            duration=updated.duration,
        )
        return updated
