"""
Complaint classification via an OpenAI-compatible chat completions endpoint.

The model is asked for a JSON object with ``category``, ``priority`` and
``summary``. Anything that does not parse into that shape is replaced by a
fixed fallback analysis flagged for manual review; only transport/HTTP
failures surface as ``ClassificationError``.
"""

from __future__ import annotations

import json
from typing import Optional

import httpx
import structlog
from pydantic import ValidationError

from complaint_intake.config import Settings
from complaint_intake.models import ComplaintAnalysis, ComplaintCategory, Priority
from complaint_intake.retry import AI_INFERENCE, RetryPolicy, with_retry

log = structlog.get_logger(__name__)

FALLBACK_SUMMARY = "Automatic classification unavailable: manual review required"

CLASSIFICATION_PROMPT = """You are an assistant that triages citizen complaints received by phone.
The user message is the transcript of a recorded call (usually in Spanish).

Return ONLY a JSON object with exactly these keys:
{
  "category": one of %(categories)s,
  "priority": one of "low", "medium", "high",
  "summary": a single sentence of at most %(max_len)d characters describing the complaint
}

Priority guide:
- high: ongoing danger, violence, threats to life or an incident happening right now
- medium: a crime or serious problem that already happened
- low: nuisances, general information, or complaints with no urgency

If the complaint does not fit any category use "Other". Write the summary in the
language of the transcript."""

# Common Spanish labels the model sometimes answers with.
_CATEGORY_ALIASES: dict[str, ComplaintCategory] = {
    "robo": ComplaintCategory.THEFT,
    "hurto": ComplaintCategory.THEFT,
    "violencia-domestica": ComplaintCategory.DOMESTIC_VIOLENCE,
    "violencia-doméstica": ComplaintCategory.DOMESTIC_VIOLENCE,
    "vandalismo": ComplaintCategory.VANDALISM,
    "ruido": ComplaintCategory.NOISE,
    "drogas": ComplaintCategory.DRUGS,
    "fraude": ComplaintCategory.FRAUD,
    "estafa": ComplaintCategory.FRAUD,
    "corrupcion": ComplaintCategory.CORRUPTION,
    "corrupción": ComplaintCategory.CORRUPTION,
    "acoso": ComplaintCategory.HARASSMENT,
    "amenazas": ComplaintCategory.THREATS,
    "otro": ComplaintCategory.OTHER,
}

_CATEGORY_LOOKUP: dict[str, ComplaintCategory] = {
    c.value.lower(): c for c in ComplaintCategory
}
_CATEGORY_LOOKUP.update(_CATEGORY_ALIASES)


class ClassificationError(RuntimeError):
    """The classification endpoint could not be reached or returned an error."""


def fallback_analysis() -> ComplaintAnalysis:
    return ComplaintAnalysis(
        category=ComplaintCategory.OTHER,
        priority=Priority.MEDIUM,
        summary=FALLBACK_SUMMARY,
        needs_review=True,
    )


def normalise_category(raw: object) -> ComplaintCategory:
    """Map a free-text category onto the closed set; unknown values become Other."""
    if not isinstance(raw, str):
        return ComplaintCategory.OTHER
    key = "-".join(raw.strip().lower().replace("_", " ").split())
    return _CATEGORY_LOOKUP.get(key, ComplaintCategory.OTHER)


def parse_analysis(content: str, max_summary_length: int = 200) -> ComplaintAnalysis:
    """
    Parse a model reply into a ComplaintAnalysis.

    Raises ValueError (json.JSONDecodeError / pydantic.ValidationError are
    both subclasses) when the reply does not have the expected shape.
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise ValueError("summary missing or empty")
    summary = " ".join(summary.split())
    if len(summary) > max_summary_length:
        summary = summary[: max_summary_length - 1].rstrip() + "…"

    priority = data.get("priority")
    if isinstance(priority, str):
        priority = priority.strip().lower()

    return ComplaintAnalysis.model_validate(
        {
            "category": normalise_category(data.get("category")),
            "priority": priority,
            "summary": summary,
        }
    )


class ClassificationClient:
    """Async client that turns a transcript into a ComplaintAnalysis."""

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        policy: RetryPolicy = AI_INFERENCE,
    ):
        self.settings = settings
        self.base_url = settings.openai_base_url.rstrip("/")
        self.policy = policy
        self.system_prompt = CLASSIFICATION_PROMPT % {
            "categories": ", ".join(f'"{c.value}"' for c in ComplaintCategory),
            "max_len": settings.summary_max_length,
        }
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

    async def _complete(self, transcript: str) -> str:
        client = await self._client()
        resp = await client.post(
            f"{self.base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.settings.openai_api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.settings.classification_model,
                "response_format": {"type": "json_object"},
                "temperature": 0.2,
                "messages": [
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": transcript},
                ],
            },
        )
        resp.raise_for_status()
        try:
            return resp.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError):
            # Unexpected body shape: parsed as empty reply.
            return ""

    async def classify(self, transcript: str) -> ComplaintAnalysis:
        try:
            content = await with_retry(
                lambda: self._complete(transcript),
                self.policy,
                operation_name="classify",
            )
        except httpx.HTTPError as exc:
            raise ClassificationError(f"Classification request failed: {exc}") from exc

        try:
            analysis = parse_analysis(content, self.settings.summary_max_length)
        except (ValueError, ValidationError) as exc:
            log.error(
                "classification_parse_failed",
                error=str(exc),
                raw_reply=content[:500],
            )
            return fallback_analysis()

        log.info(
            "complaint_classified",
            category=analysis.category.value,
            priority=analysis.priority.value,
        )
        return analysis
