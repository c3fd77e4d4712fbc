"""
Server entry point. Builds the pipeline once per process and serves the
Twilio webhooks.

Usage:
    python -m complaint_intake.server
    # or
    uvicorn complaint_intake.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from complaint_intake.classification import ClassificationClient
from complaint_intake.config import Settings, get_settings
from complaint_intake.database import Database
from complaint_intake.ingestion import build_orchestrator
from complaint_intake.transcription import TranscriptionClient
from complaint_intake.webhook import create_webhook_app

log = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI app; clients and the database live for the app's lifetime."""
    settings = settings or get_settings()
    db = Database(settings.database_path)
    transcriber = TranscriptionClient(settings)
    classifier = ClassificationClient(settings)
    orchestrator = build_orchestrator(settings, db, transcriber, classifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start up: connect DB. Shut down: close HTTP clients and DB."""
        settings.ensure_dirs()
        await db.connect()
        log.info("server_started", db=str(settings.database_path))
        yield
        await transcriber.close()
        await classifier.close()
        await db.close()
        log.info("server_stopped")

    return create_webhook_app(settings, orchestrator, lifespan=lifespan)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "complaint_intake.server:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
