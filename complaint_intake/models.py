"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ───────────────────────────────────────────────────────
class CallStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ComplaintStatus(str, enum.Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ComplaintCategory(str, enum.Enum):
    """Closed set of categories the classifier is allowed to produce."""

    THEFT = "Theft"
    DOMESTIC_VIOLENCE = "Domestic-Violence"
    VANDALISM = "Vandalism"
    NOISE = "Noise"
    DRUGS = "Drugs"
    FRAUD = "Fraud"
    CORRUPTION = "Corruption"
    HARASSMENT = "Harassment"
    THREATS = "Threats"
    OTHER = "Other"


# ── Call (one inbound phone call) ───────────────────────────────
class Call(BaseModel):
    id: str = Field(default_factory=_new_id)
    call_sid: str = Field(..., description="Telephony provider call id, idempotency key")
    phone_number: str = "unknown"
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    duration: Optional[int] = None
    status: CallStatus = CallStatus.IN_PROGRESS
    audio_url: Optional[str] = None
    recording_sid: Optional[str] = None
    has_complaint: bool = False
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ── Complaint (triage record derived from a call) ───────────────
class Complaint(BaseModel):
    id: str = Field(default_factory=_new_id)
    call_id: str
    transcription: Optional[str] = None
    status: ComplaintStatus = ComplaintStatus.NEW
    category: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    assigned_to: Optional[str] = None
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    summary: Optional[str] = None
    needs_review: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ComplaintHistoryEntry(BaseModel):
    id: Optional[int] = None
    complaint_id: str
    user_id: Optional[str] = None
    old_status: Optional[ComplaintStatus] = None
    new_status: ComplaintStatus
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ── Classifier output (transient, never persisted as-is) ────────
class ComplaintAnalysis(BaseModel):
    category: ComplaintCategory
    priority: Priority
    summary: str
    # True when the classifier could not produce a usable answer and a
    # default was substituted.
    needs_review: bool = False
