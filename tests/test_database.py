"""Tests for database operations."""

import pytest
import pytest_asyncio

from complaint_intake.database import Database
from complaint_intake.models import Call, CallStatus, Complaint, ComplaintStatus, Priority


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


async def _make_call(db, sid="CA1", **kw) -> Call:
    return await db.create_call(Call(call_sid=sid, phone_number="+15550000", **kw))


@pytest.mark.asyncio
async def test_create_and_get_call(db):
    created = await _make_call(db, duration=45, status=CallStatus.COMPLETED)

    by_id = await db.get_call_by_id(created.id)
    by_sid = await db.get_call_by_sid("CA1")
    assert by_id == by_sid
    assert by_id.duration == 45
    assert by_id.status == CallStatus.COMPLETED
    assert by_id.has_complaint is False


@pytest.mark.asyncio
async def test_create_call_conflict_returns_existing_row(db):
    first = await _make_call(db)
    second = await db.create_call(Call(call_sid="CA1", phone_number="+15559999"))

    assert second.id == first.id
    assert second.phone_number == "+15550000"
    assert len(await db.get_all_calls()) == 1


@pytest.mark.asyncio
async def test_update_call(db):
    call = await _make_call(db)
    updated = await db.update_call(call.id, has_complaint=True, notes="ok", status=CallStatus.FAILED)

    assert updated.has_complaint is True
    assert updated.notes == "ok"
    assert updated.status == CallStatus.FAILED
    assert updated.updated_at >= call.updated_at


@pytest.mark.asyncio
async def test_update_missing_call_returns_none(db):
    assert await db.update_call("nope", notes="x") is None


@pytest.mark.asyncio
async def test_update_call_rejects_unknown_columns(db):
    call = await _make_call(db)
    with pytest.raises(ValueError):
        await db.update_call(call.id, call_sid="CA2")


@pytest.mark.asyncio
async def test_unprocessed_calls(db):
    done = await _make_call(db, "CA1", status=CallStatus.COMPLETED)
    await db.update_call(done.id, has_complaint=True)
    await _make_call(db, "CA2", status=CallStatus.COMPLETED)
    await _make_call(db, "CA3", status=CallStatus.FAILED)

    stuck = await db.get_unprocessed_calls()
    assert [c.call_sid for c in stuck] == ["CA2"]


@pytest.mark.asyncio
async def test_complaint_roundtrip_and_lookup_by_call(db):
    call = await _make_call(db)
    complaint = await db.create_complaint(
        Complaint(
            call_id=call.id,
            transcription="texto",
            category="Noise",
            priority=Priority.LOW,
            summary="Música alta",
        )
    )

    fetched = await db.get_complaint_by_id(complaint.id)
    assert fetched.status == ComplaintStatus.NEW
    assert fetched.category == "Noise"
    assert fetched.resolved_at is None
    assert [c.id for c in await db.get_complaints_for_call(call.id)] == [complaint.id]
    assert len(await db.get_all_complaints()) == 1


@pytest.mark.asyncio
async def test_status_update_appends_history_and_sets_resolved_at(db):
    call = await _make_call(db)
    complaint = await db.create_complaint(Complaint(call_id=call.id, transcription="t"))

    await db.update_complaint_status(complaint.id, ComplaintStatus.IN_PROGRESS, "officer-1")
    assert (await db.get_complaint_by_id(complaint.id)).resolved_at is None

    resolved = await db.update_complaint_status(
        complaint.id, ComplaintStatus.RESOLVED, "officer-1", notes="patrulla enviada"
    )
    assert resolved.status == ComplaintStatus.RESOLVED
    assert resolved.resolved_at is not None

    history = await db.get_complaint_history(complaint.id)
    assert [(h.old_status, h.new_status) for h in history] == [
        (ComplaintStatus.NEW, ComplaintStatus.IN_PROGRESS),
        (ComplaintStatus.IN_PROGRESS, ComplaintStatus.RESOLVED),
    ]
    assert history[1].notes == "patrulla enviada"


@pytest.mark.asyncio
async def test_status_update_missing_complaint(db):
    assert await db.update_complaint_status("nope", ComplaintStatus.CLOSED) is None


@pytest.mark.asyncio
async def test_summary_counts(db):
    call = await _make_call(db, status=CallStatus.COMPLETED)
    await db.create_complaint(Complaint(call_id=call.id, needs_review=True))

    summary = await db.get_summary()
    assert summary["total_calls"] == 1
    assert summary["calls_by_status"] == {"completed": 1}
    assert summary["total_complaints"] == 1
    assert summary["complaints_needing_review"] == 1
