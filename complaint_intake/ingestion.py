"""
Ingestion orchestrator: turns a completed Twilio recording into a Complaint.

    received → call_recorded → filtered
                             → duplicate
                             → transcribed → classified → materialized → done
    (any step after received may end in failed)

Step 1 (the call upsert) always runs first. Whatever fails afterwards, the
call row it wrote stays in place without ``has_complaint`` so staff can find
and replay it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Protocol

import structlog

from complaint_intake.classification import ClassificationClient
from complaint_intake.config import Settings
from complaint_intake.database import Database
from complaint_intake.ledger import CallLedger, parse_duration
from complaint_intake.materializer import ComplaintMaterializer
from complaint_intake.models import Call, Complaint, ComplaintAnalysis
from complaint_intake.phone_utils import normalise_phone
from complaint_intake.transcription import TranscriptionClient

log = structlog.get_logger(__name__)


class IngestionState(str, enum.Enum):
    RECEIVED = "received"
    CALL_RECORDED = "call_recorded"
    FILTERED = "filtered"
    DUPLICATE = "duplicate"
    TRANSCRIBED = "transcribed"
    CLASSIFIED = "classified"
    MATERIALIZED = "materialized"
    DONE = "done"
    FAILED = "failed"


class IngestionError(RuntimeError):
    """Raised when ingestion stops in the failed state."""

    def __init__(self, step: str, call_sid: str, recording_sid: str, message: str):
        super().__init__(message)
        self.step = step
        self.call_sid = call_sid
        self.recording_sid = recording_sid


class Transcriber(Protocol):
    async def download_audio(self, url: str) -> bytes: ...

    async def transcribe(self, audio: bytes, filename: str = "audio.wav") -> str: ...


class Classifier(Protocol):
    async def classify(self, transcript: str) -> ComplaintAnalysis: ...


@dataclass
class IngestionResult:
    state: IngestionState
    call: Optional[Call] = None
    transcript: Optional[str] = None
    analysis: Optional[ComplaintAnalysis] = None
    complaint: Optional[Complaint] = None
    history: list[IngestionState] = field(default_factory=list)


class IngestionOrchestrator:
    """Sequences ledger → download → transcribe → classify → materialize."""

    def __init__(
        self,
        ledger: CallLedger,
        transcriber: Transcriber,
        classifier: Classifier,
        materializer: ComplaintMaterializer,
        phone_region: str = "US",
    ):
        self.ledger = ledger
        self.transcriber = transcriber
        self.classifier = classifier
        self.materializer = materializer
        self.phone_region = phone_region

    async def process_recording(
        self,
        call_sid: str,
        recording_sid: str,
        recording_url: str,
        from_number: Optional[str],
        duration: Optional[str | int],
    ) -> IngestionResult:
        """Run the full pipeline for one recording; raises IngestionError on failure."""
        with structlog.contextvars.bound_contextvars(
            call_sid=call_sid, recording_sid=recording_sid
        ):
            return await self._run(call_sid, recording_sid, recording_url, from_number, duration)

    async def handle_recording_event(
        self,
        call_sid: str,
        recording_sid: str,
        recording_url: str,
        from_number: Optional[str],
        duration: Optional[str | int],
    ) -> None:
        """Background entry point for the webhook. Never raises."""
        try:
            await self.process_recording(
                call_sid, recording_sid, recording_url, from_number, duration
            )
        except Exception as exc:
            log.critical(
                "ingestion_failed",
                call_sid=call_sid,
                recording_sid=recording_sid,
                recording_url=recording_url,
                step=getattr(exc, "step", "unknown"),
                error=str(exc),
                exc_info=True,
            )

    async def _run(
        self,
        call_sid: str,
        recording_sid: str,
        recording_url: str,
        from_number: Optional[str],
        duration: Optional[str | int],
    ) -> IngestionResult:
        result = IngestionResult(state=IngestionState.RECEIVED)
        result.history.append(IngestionState.RECEIVED)
        duration_seconds = parse_duration(duration)
        log.info("ingestion_started", duration=duration_seconds)

        # Step 1: the call row. Nothing else can run without it.
        try:
            call = await self.ledger.upsert_call(
                provider_call_id=call_sid,
                phone_number=normalise_phone(from_number, self.phone_region),
                duration_seconds=duration_seconds,
                recording_ref=recording_url,
                recording_provider_id=recording_sid,
            )
        except Exception as exc:
            self._advance(result, IngestionState.FAILED)
            log.critical("call_upsert_failed", error=str(exc))
            raise IngestionError(
                "call_upsert", call_sid, recording_sid, f"Could not record call: {exc}"
            ) from exc
        result.call = call
        self._advance(result, IngestionState.CALL_RECORDED)

        if self.ledger.is_short_call(call.duration):
            self._advance(result, IngestionState.FILTERED)
            log.info(
                "call_filtered_too_short",
                call_id=call.id,
                duration=call.duration,
                min_duration=self.ledger.min_duration_seconds,
            )
            return result

        if call.has_complaint:
            self._advance(result, IngestionState.DUPLICATE)
            log.info("call_already_processed", call_id=call.id)
            return result

        step = "download"
        try:
            audio = await self.transcriber.download_audio(recording_url)

            step = "transcribe"
            result.transcript = await self.transcriber.transcribe(
                audio, filename=f"{recording_sid or call_sid}.wav"
            )
            self._advance(result, IngestionState.TRANSCRIBED)

            step = "classify"
            result.analysis = await self.classifier.classify(result.transcript)
            self._advance(result, IngestionState.CLASSIFIED)

            step = "materialize"
            result.complaint = await self.materializer.materialize(
                call, result.transcript, result.analysis
            )
            self._advance(result, IngestionState.MATERIALIZED)
        except Exception as exc:
            self._advance(result, IngestionState.FAILED)
            log.critical("ingestion_step_failed", step=step, call_id=call.id, error=str(exc))
            await self._annotate_failure(call, step, exc)
            raise IngestionError(
                step, call_sid, recording_sid, f"Ingestion failed at {step}: {exc}"
            ) from exc

        self._advance(result, IngestionState.DONE)
        log.info(
            "ingestion_complete",
            call_id=call.id,
            complaint_id=result.complaint.id,
            needs_review=result.analysis.needs_review,
        )
        return result

    @staticmethod
    def _advance(result: IngestionResult, state: IngestionState) -> None:
        result.state = state
        result.history.append(state)

    async def _annotate_failure(self, call: Call, step: str, exc: Exception) -> None:
        """Best effort: leave a note on the call so it shows up for manual follow-up."""
        try:
            await self.ledger.db.update_call(
                call.id, notes=f"processing failed at {step}: {exc}"[:500]
            )
        except Exception as note_exc:
            log.error("call_failure_note_failed", call_id=call.id, error=str(note_exc))


def build_orchestrator(
    settings: Settings,
    db: Database,
    transcriber: Optional[Transcriber] = None,
    classifier: Optional[Classifier] = None,
) -> IngestionOrchestrator:
    """Wire one set of clients per process."""
    return IngestionOrchestrator(
        ledger=CallLedger(db, settings.min_call_duration_seconds),
        transcriber=transcriber or TranscriptionClient(settings),
        classifier=classifier or ClassificationClient(settings),
        materializer=ComplaintMaterializer(db),
        phone_region=settings.default_phone_region,
    )
