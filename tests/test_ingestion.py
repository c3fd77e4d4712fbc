"""Tests for the ingestion orchestrator."""

import pytest
import pytest_asyncio

from complaint_intake.classification import ClassificationError, fallback_analysis
from complaint_intake.config import Settings
from complaint_intake.database import Database
from complaint_intake.ingestion import IngestionError, IngestionState, build_orchestrator
from complaint_intake.ledger import SHORT_CALL_NOTE
from complaint_intake.models import CallStatus, ComplaintCategory, ComplaintStatus, Priority

from fakes import FakeClassifier, FakeTranscriber


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(database_path=tmp_path / "test.db", min_call_duration_seconds=10)


def _orchestrator(settings, db, transcriber=None, classifier=None):
    return build_orchestrator(
        settings,
        db,
        transcriber=transcriber or FakeTranscriber(),
        classifier=classifier or FakeClassifier(),
    )


@pytest.mark.asyncio
async def test_full_pipeline_creates_one_complaint(settings, db):
    orch = _orchestrator(settings, db)

    result = await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")

    assert result.state == IngestionState.DONE
    assert result.history == [
        IngestionState.RECEIVED,
        IngestionState.CALL_RECORDED,
        IngestionState.TRANSCRIBED,
        IngestionState.CLASSIFIED,
        IngestionState.MATERIALIZED,
        IngestionState.DONE,
    ]

    call = await db.get_call_by_sid("CA1")
    assert call.duration == 45
    assert call.status == CallStatus.COMPLETED
    assert call.has_complaint is True
    assert call.phone_number == "+15550000"

    complaints = await db.get_all_complaints()
    assert len(complaints) == 1
    complaint = complaints[0]
    assert complaint.call_id == call.id
    assert complaint.status == ComplaintStatus.NEW
    assert complaint.category in {c.value for c in ComplaintCategory}
    assert complaint.priority in set(Priority)
    assert complaint.transcription == "Hay una pelea en la calle"


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", ["0", "3", "9"])
async def test_short_call_is_filtered(settings, db, duration):
    transcriber = FakeTranscriber()
    classifier = FakeClassifier()
    orch = _orchestrator(settings, db, transcriber, classifier)

    result = await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", duration)

    assert result.state == IngestionState.FILTERED
    call = await db.get_call_by_sid("CA1")
    assert call.status == CallStatus.FAILED
    assert call.notes == SHORT_CALL_NOTE
    assert "short" in call.notes
    assert call.has_complaint is False
    assert await db.get_all_complaints() == []
    assert transcriber.downloads == []
    assert classifier.calls == []


@pytest.mark.asyncio
async def test_redelivery_after_success_is_a_noop(settings, db):
    transcriber = FakeTranscriber()
    orch = _orchestrator(settings, db, transcriber)

    await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")
    again = await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")

    assert again.state == IngestionState.DUPLICATE
    assert len(await db.get_all_calls()) == 1
    assert len(await db.get_all_complaints()) == 1
    assert len(transcriber.downloads) == 1


@pytest.mark.asyncio
async def test_classification_failure_keeps_call_row(settings, db):
    orch = _orchestrator(
        settings, db, classifier=FakeClassifier(error=ClassificationError("502 Bad Gateway"))
    )

    with pytest.raises(IngestionError) as info:
        await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")

    assert info.value.step == "classify"
    assert info.value.call_sid == "CA1"
    assert info.value.recording_sid == "RE1"

    call = await db.get_call_by_sid("CA1")
    assert call is not None
    assert call.duration == 45
    assert call.status == CallStatus.COMPLETED
    assert call.audio_url == "https://x/rec.wav"
    assert call.has_complaint is False
    assert "classify" in call.notes
    assert await db.get_all_complaints() == []
    assert [c.call_sid for c in await db.get_unprocessed_calls()] == ["CA1"]


@pytest.mark.asyncio
async def test_retry_after_failure_produces_complaint(settings, db):
    failing = _orchestrator(settings, db, transcriber=FakeTranscriber(fail_download=True))
    with pytest.raises(IngestionError):
        await failing.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")

    result = await _orchestrator(settings, db).process_recording(
        "CA1", "RE1", "https://x/rec.wav", "+15550000", "45"
    )

    assert result.state == IngestionState.DONE
    assert len(await db.get_all_calls()) == 1
    assert (await db.get_call_by_sid("CA1")).has_complaint is True


@pytest.mark.asyncio
async def test_fallback_analysis_still_creates_complaint(settings, db):
    orch = _orchestrator(settings, db, classifier=FakeClassifier(analysis=fallback_analysis()))

    result = await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")

    assert result.state == IngestionState.DONE
    complaint = result.complaint
    assert complaint.category == "Other"
    assert complaint.priority == Priority.MEDIUM
    assert complaint.needs_review is True


@pytest.mark.asyncio
async def test_call_upsert_failure_is_fatal(settings, db, monkeypatch):
    transcriber = FakeTranscriber()
    orch = _orchestrator(settings, db, transcriber)

    async def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(orch.ledger, "upsert_call", broken)

    with pytest.raises(IngestionError) as info:
        await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")

    assert info.value.step == "call_upsert"
    assert transcriber.downloads == []


@pytest.mark.asyncio
async def test_background_handler_swallows_errors(settings, db):
    orch = _orchestrator(settings, db, transcriber=FakeTranscriber(fail_download=True))

    await orch.handle_recording_event("CA1", "RE1", "https://x/rec.wav", "+15550000", "45")

    call = await db.get_call_by_sid("CA1")
    assert call.has_complaint is False
    assert "download" in call.notes


@pytest.mark.asyncio
async def test_short_call_redelivered_without_duration_stays_filtered(settings, db):
    orch = _orchestrator(settings, db)

    await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", "3")
    again = await orch.process_recording("CA1", "RE1", "https://x/rec.wav", "+15550000", None)

    assert again.state == IngestionState.FILTERED
    call = await db.get_call_by_sid("CA1")
    assert call.status == CallStatus.FAILED
    assert call.notes == SHORT_CALL_NOTE
    assert await db.get_unprocessed_calls() == []
