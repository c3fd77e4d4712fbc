"""
FastAPI webhook receiver for Twilio voice and recording-status callbacks.
The recording-status route acknowledges immediately and runs ingestion as a
background task.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Mapping, Optional
from xml.sax.saxutils import quoteattr

import structlog
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import Response

from complaint_intake.config import Settings
from complaint_intake.ingestion import IngestionOrchestrator
from complaint_intake.ledger import CallLedgerError
from complaint_intake.phone_utils import normalise_phone

log = structlog.get_logger(__name__)

VOICE_PATH = "/webhook/twilio/voice"
RECORDING_STATUS_PATH = "/webhook/twilio/recording-status"


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """HMAC-SHA1 of the full URL followed by every POST param (sorted by name)."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def build_voice_twiml(base_url: str) -> str:
    """Greeting, beep, then record the caller and report back on completion."""
    base = base_url.rstrip("/")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Response>"
        f"<Play>{base}/audio/bienvenida.mp3</Play>"
        f"<Play>{base}/audio/beep.mp3</Play>"
        '<Record timeout="10" maxLength="300" endSilenceTimeout="10" transcribe="false" '
        f"recordingStatusCallback={quoteattr(RECORDING_STATUS_PATH)} "
        'recordingStatusCallbackMethod="POST" />'
        f"<Play>{base}/audio/error-grabacion.mp3</Play>"
        "</Response>"
    )


def create_webhook_app(
    settings: Settings,
    orchestrator: IngestionOrchestrator,
    lifespan: Optional[Any] = None,
) -> FastAPI:
    """Create and return the FastAPI app with webhook routes."""

    app = FastAPI(
        title="Complaint Intake: Twilio Webhooks",
        version="0.1.0",
        lifespan=lifespan,
    )

    def _public_url(request: Request) -> str:
        if settings.public_base_url:
            return settings.public_base_url.rstrip("/") + request.url.path
        return str(request.url)

    def _verify_signature(request: Request, form: Mapping[str, str], signature: Optional[str]) -> None:
        if not settings.twilio_validate_signature:
            return
        if not settings.twilio_auth_token:
            log.warning("twilio_signature_check_skipped_no_token")
            return
        expected = compute_twilio_signature(settings.twilio_auth_token, _public_url(request), form)
        if not signature or not hmac.compare_digest(expected, signature):
            log.warning("twilio_signature_mismatch", path=request.url.path)
            raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    # ── Health check ────────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ── Incoming call: instruct Twilio to record ────────────────
    @app.get(VOICE_PATH)
    async def voice_info():
        return {"message": "Twilio voice webhook"}

    @app.post(VOICE_PATH)
    async def voice_webhook(
        request: Request,
        x_twilio_signature: Optional[str] = Header(None, alias="X-Twilio-Signature"),
    ):
        form = {k: str(v) for k, v in (await request.form()).items()}
        _verify_signature(request, form, x_twilio_signature)

        call_sid = form.get("CallSid", "")
        log.info("incoming_call", call_sid=call_sid, from_number=form.get("From", ""))
        if call_sid:
            try:
                await orchestrator.ledger.register_incoming(
                    call_sid, normalise_phone(form.get("From"), settings.default_phone_region)
                )
            except CallLedgerError as exc:
                # The recording callback creates the row later anyway.
                log.error("incoming_call_register_failed", call_sid=call_sid, error=str(exc))

        base_url = settings.public_base_url or str(request.base_url)
        return Response(content=build_voice_twiml(base_url), media_type="text/xml")

    # ── Recording finished: hand off to ingestion ───────────────
    @app.get(RECORDING_STATUS_PATH)
    async def recording_status_info():
        return {"message": "Twilio recording status webhook"}

    @app.post(RECORDING_STATUS_PATH)
    async def recording_status_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        x_twilio_signature: Optional[str] = Header(None, alias="X-Twilio-Signature"),
    ):
        form = {k: str(v) for k, v in (await request.form()).items()}
        _verify_signature(request, form, x_twilio_signature)

        call_sid = form.get("CallSid", "")
        recording_sid = form.get("RecordingSid", "")
        recording_url = form.get("RecordingUrl", "")
        recording_status = form.get("RecordingStatus", "")

        log.info(
            "recording_status_received",
            call_sid=call_sid,
            recording_sid=recording_sid,
            recording_status=recording_status,
        )

        if recording_status != "completed" or not recording_sid or not recording_url:
            return {"success": True, "message": f"Recording status: {recording_status or 'n/a'}"}

        if not call_sid:
            raise HTTPException(status_code=400, detail="Missing CallSid")

        background_tasks.add_task(
            orchestrator.handle_recording_event,
            call_sid,
            recording_sid,
            recording_url,
            form.get("From"),
            form.get("RecordingDuration"),
        )
        return {"success": True, "message": "Recording accepted for processing"}

    return app
