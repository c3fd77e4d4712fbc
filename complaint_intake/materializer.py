"""
Turns a classified call into a Complaint row and flags the call.
"""

from __future__ import annotations

import aiosqlite
import structlog

from complaint_intake.database import Database
from complaint_intake.models import Call, Complaint, ComplaintAnalysis, ComplaintStatus

log = structlog.get_logger(__name__)


class MaterializationError(RuntimeError):
    """The complaint row could not be inserted."""

    def __init__(self, call_id: str, message: str):
        super().__init__(message)
        self.call_id = call_id


class ComplaintMaterializer:
    def __init__(self, db: Database):
        self.db = db

    async def materialize(
        self, call: Call, transcript: str, analysis: ComplaintAnalysis
    ) -> Complaint:
        """
        Persist the complaint for ``call`` and set ``call.has_complaint``.

        The complaint is the source of truth: if it was written but the flag
        update fails, the inconsistency is logged and the complaint returned.
        A complaint left behind by an earlier partial run is reused.
        """
        try:
            previous = await self.db.get_complaints_for_call(call.id)
            if previous:
                complaint = previous[0]
                log.warning(
                    "complaint_already_exists",
                    call_id=call.id,
                    complaint_id=complaint.id,
                )
            else:
                complaint = await self.db.create_complaint(
                    Complaint(
                        call_id=call.id,
                        transcription=transcript,
                        status=ComplaintStatus.NEW,
                        category=analysis.category.value,
                        priority=analysis.priority,
                        summary=analysis.summary,
                        needs_review=analysis.needs_review,
                    )
                )
        except aiosqlite.Error as exc:
            raise MaterializationError(call.id, f"Failed to create complaint: {exc}") from exc

        try:
            flagged = await self.db.update_call(call.id, has_complaint=True)
        except aiosqlite.Error as exc:
            flagged = None
            log.error("complaint_flag_update_failed", call_id=call.id, error=str(exc))

        if flagged is None:
            log.error(
                "complaint_flag_inconsistent",
                call_id=call.id,
                complaint_id=complaint.id,
            )
        else:
            log.info(
                "complaint_created",
                call_id=call.id,
                complaint_id=complaint.id,
                category=complaint.category,
                priority=complaint.priority.value,
                needs_review=complaint.needs_review,
            )
        return complaint
