"""Tests for complaint materialization."""

import aiosqlite
import pytest
import pytest_asyncio

from complaint_intake.database import Database
from complaint_intake.materializer import ComplaintMaterializer, MaterializationError
from complaint_intake.models import (
    Call,
    CallStatus,
    ComplaintAnalysis,
    ComplaintCategory,
    ComplaintStatus,
    Priority,
)

ANALYSIS = ComplaintAnalysis(
    category=ComplaintCategory.VANDALISM,
    priority=Priority.MEDIUM,
    summary="Grafitis en el parque central",
)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def call(db):
    return await db.create_call(
        Call(call_sid="CA1", phone_number="+15550000", duration=45, status=CallStatus.COMPLETED)
    )


@pytest.mark.asyncio
async def test_materialize_creates_complaint_and_flags_call(db, call):
    complaint = await ComplaintMaterializer(db).materialize(call, "pintaron las paredes", ANALYSIS)

    assert complaint.call_id == call.id
    assert complaint.status == ComplaintStatus.NEW
    assert complaint.category == "Vandalism"
    assert complaint.priority == Priority.MEDIUM
    assert complaint.summary == "Grafitis en el parque central"
    assert complaint.transcription == "pintaron las paredes"
    assert complaint.assigned_to is None
    assert complaint.resolution is None
    assert complaint.resolved_at is None
    assert (await db.get_call_by_id(call.id)).has_complaint is True


@pytest.mark.asyncio
async def test_materialize_reuses_existing_complaint(db, call):
    materializer = ComplaintMaterializer(db)
    first = await materializer.materialize(call, "t", ANALYSIS)
    second = await materializer.materialize(call, "t", ANALYSIS)

    assert first.id == second.id
    assert len(await db.get_complaints_for_call(call.id)) == 1


@pytest.mark.asyncio
async def test_insert_failure_leaves_call_unflagged(db, call, monkeypatch):
    async def broken(complaint):
        raise aiosqlite.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "create_complaint", broken)

    with pytest.raises(MaterializationError):
        await ComplaintMaterializer(db).materialize(call, "t", ANALYSIS)

    assert (await db.get_call_by_id(call.id)).has_complaint is False


@pytest.mark.asyncio
async def test_flag_failure_keeps_complaint(db, call, monkeypatch):
    async def broken(call_id, **fields):
        raise aiosqlite.OperationalError("database is locked")

    monkeypatch.setattr(db, "update_call", broken)

    complaint = await ComplaintMaterializer(db).materialize(call, "t", ANALYSIS)

    assert await db.get_complaint_by_id(complaint.id) is not None
    assert (await db.get_call_by_id(call.id)).has_complaint is False
