"""
Speech-to-text client: fetches a Twilio recording and transcribes it with an
OpenAI-compatible ``/audio/transcriptions`` endpoint.
"""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from complaint_intake.config import Settings
from complaint_intake.retry import AI_INFERENCE, NETWORK_IO, RetryPolicy, with_retry

log = structlog.get_logger(__name__)

# Substrings in an error message that mark a request the service will never
# accept, however many times it is sent.
_PERMANENT_MARKERS = (
    "invalid format",
    "invalid file format",
    "unsupported format",
    "unsupported file",
    "could not be decoded",
    "validation",
)


class DownloadError(RuntimeError):
    """The recording could not be fetched from the telephony provider."""

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class TranscriptionError(RuntimeError):
    """The speech-to-text service rejected or failed the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def permanent(self) -> bool:
        return is_permanent_transcription_error(self)


def is_permanent_transcription_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _PERMANENT_MARKERS)


def _is_transient_download_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code >= 500 or code == 429
    return False


TRANSCRIPTION = AI_INFERENCE.with_predicate(
    lambda exc: not is_permanent_transcription_error(exc)
)
DOWNLOAD = NETWORK_IO.with_predicate(_is_transient_download_error)


class TranscriptionClient:
    """Async client for recording download + transcription."""

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        download_policy: RetryPolicy = DOWNLOAD,
        transcribe_policy: RetryPolicy = TRANSCRIPTION,
    ):
        self.settings = settings
        self.base_url = settings.openai_base_url.rstrip("/")
        self.download_policy = download_policy
        self.transcribe_policy = transcribe_policy
        self._http = http
        self._owns_http = http is None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        if self._owns_http and self._http and not self._http.is_closed:
            await self._http.aclose()

    # ── Download ────────────────────────────────────────────────

    async def download_audio(self, url: str) -> bytes:
        """Fetch raw recording bytes using the Twilio account credentials."""
        client = await self._client()
        auth = httpx.BasicAuth(
            self.settings.twilio_account_sid, self.settings.twilio_auth_token
        )

        async def _fetch() -> bytes:
            resp = await client.get(url, auth=auth, follow_redirects=True)
            resp.raise_for_status()
            return resp.content

        try:
            audio = await with_retry(
                _fetch, self.download_policy, operation_name="download_audio"
            )
        except (httpx.HTTPError, OSError) as exc:
            raise DownloadError(url, f"Failed to download recording: {exc}") from exc

        log.info("audio_downloaded", url=url, size_bytes=len(audio))
        return audio

    # ── Transcription ───────────────────────────────────────────

    async def transcribe(self, audio: bytes, filename: str = "audio.wav") -> str:
        """Return the plain-text transcript; an empty string is a valid result."""
        client = await self._client()

        async def _submit() -> str:
            try:
                resp = await client.post(
                    f"{self.base_url}/audio/transcriptions",
                    headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
                    data={
                        "model": self.settings.transcription_model,
                        "language": self.settings.transcription_language,
                    },
                    files={"file": (filename, audio, "audio/wav")},
                )
            except httpx.TransportError as exc:
                raise TranscriptionError(f"Transcription request failed: {exc}") from exc

            if resp.is_error:
                raise TranscriptionError(
                    f"Transcription failed ({resp.status_code}): {_error_message(resp)}",
                    status_code=resp.status_code,
                )
            try:
                body = resp.json()
            except ValueError as exc:
                raise TranscriptionError("Transcription response was not JSON") from exc
            return body.get("text") or ""

        text = await with_retry(
            _submit, self.transcribe_policy, operation_name="transcribe"
        )
        log.info("audio_transcribed", chars=len(text))
        return text


def _error_message(resp: httpx.Response) -> str:
    """Pull the human-readable message out of an OpenAI-style error body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
    return resp.text[:500]
