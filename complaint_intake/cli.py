"""
Operator CLI for the complaint intake service.
Run the webhook server, inspect pipeline state, replay stuck calls and move
complaints through their status workflow.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from complaint_intake.config import get_settings
from complaint_intake.logging_config import setup_logging
from complaint_intake.models import ComplaintStatus

app = typer.Typer(
    name="complaint-intake",
    help="Phone complaint intake: Twilio recordings → transcripts → triaged complaints",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


@app.command()
def server():
    """Run the Twilio webhook server."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    import uvicorn
    from complaint_intake.server import create_app

    console.print(f"\n[green]Webhook server running on {settings.host}:{settings.port}[/green]")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


@app.command()
def status():
    """Show call/complaint counts and calls stuck without a complaint."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from complaint_intake.database import Database
        from complaint_intake.phone_utils import format_for_display

        db = Database(settings.database_path)
        await db.connect()
        try:
            summary = await db.get_summary()
            stuck = await db.get_unprocessed_calls()
        finally:
            await db.close()

        table = Table(title="Intake Pipeline Status")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Total Calls", str(summary["total_calls"]))
        for s, c in sorted(summary["calls_by_status"].items()):
            table.add_row(f"  calls: {s}", str(c))
        table.add_row("Total Complaints", str(summary["total_complaints"]))
        for s, c in sorted(summary["complaints_by_status"].items()):
            table.add_row(f"  complaints: {s}", str(c))
        table.add_row("Needing Manual Review", str(summary["complaints_needing_review"]))
        console.print(table)

        if stuck:
            stuck_table = Table(title="Calls Without Complaint")
            stuck_table.add_column("Call SID", style="cyan")
            stuck_table.add_column("From")
            stuck_table.add_column("Duration")
            stuck_table.add_column("Notes", style="yellow")
            for call in stuck:
                stuck_table.add_row(
                    call.call_sid,
                    format_for_display(call.phone_number),
                    str(call.duration if call.duration is not None else "-"),
                    call.notes or "",
                )
            console.print(stuck_table)

    _run(_do())


@app.command()
def replay(
    call_sid: str = typer.Argument(..., help="Twilio CallSid of a stored call"),
):
    """Re-run ingestion for a stored call using its saved recording."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do() -> bool:
        from complaint_intake.database import Database
        from complaint_intake.ingestion import IngestionError, build_orchestrator

        db = Database(settings.database_path)
        await db.connect()
        orch = build_orchestrator(settings, db)
        try:
            call = await db.get_call_by_sid(call_sid)
            if call is None:
                console.print(f"[red]✗ No call with SID {call_sid}[/red]")
                return False
            if not call.audio_url or not call.recording_sid:
                console.print(f"[red]✗ Call {call_sid} has no recording to replay[/red]")
                return False
            try:
                result = await orch.process_recording(
                    call.call_sid,
                    call.recording_sid,
                    call.audio_url,
                    call.phone_number,
                    call.duration,
                )
            except IngestionError as exc:
                console.print(f"[red]✗ Replay failed at {exc.step}: {exc}[/red]")
                return False
            console.print(f"\n[green]✓ Replay finished in state[/green] {result.state.value}")
            if result.complaint:
                console.print(f"  Complaint: {result.complaint.id}")
            return True
        finally:
            await orch.transcriber.close()
            await orch.classifier.close()
            await db.close()

    if not _run(_do()):
        raise typer.Exit(code=1)


@app.command("set-status")
def set_status(
    complaint_id: str = typer.Argument(..., help="Complaint ID"),
    new_status: ComplaintStatus = typer.Argument(..., help="new | in_progress | resolved | closed"),
    user: Optional[str] = typer.Option(None, help="Staff member making the change"),
    notes: Optional[str] = typer.Option(None, help="Free-text note for the history log"),
):
    """Move a complaint to a new status and record it in the history log."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do() -> bool:
        from complaint_intake.database import Database

        db = Database(settings.database_path)
        await db.connect()
        try:
            complaint = await db.update_complaint_status(complaint_id, new_status, user, notes)
            if complaint is None:
                console.print(f"[red]✗ No complaint with ID {complaint_id}[/red]")
                return False
            history = await db.get_complaint_history(complaint_id)
        finally:
            await db.close()

        console.print(f"\n[green]✓ Complaint {complaint_id} is now {complaint.status.value}[/green]")
        table = Table(title="Status History")
        table.add_column("When", style="cyan")
        table.add_column("From")
        table.add_column("To", style="green")
        table.add_column("By")
        table.add_column("Notes")
        for entry in history:
            table.add_row(
                entry.created_at.isoformat(timespec="seconds"),
                entry.old_status.value if entry.old_status else "-",
                entry.new_status.value,
                entry.user_id or "-",
                entry.notes or "",
            )
        console.print(table)
        return True

    if not _run(_do()):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
