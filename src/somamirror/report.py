"""Before/after report generation through text-generation backends.

The two FeatureRecords are sent as one JSON payload. Backends are tried in
order, each up to `max_attempts` times; the first response that parses into
a valid report wins. If nothing does, a fixed neutral report is returned so
callers never see an exception from here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence

from pydantic import BaseModel, Field, ValidationError

from .errors import ReportBackendError
from .features import FeatureRecord

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You compare two biometric captures of the same person taken before and "
    "after a wellness intervention. Respond with a JSON object with the keys "
    '"score" (0-100), "headline" (one short sentence), "narrative" '
    '(several paragraphs) and "observations" (list of short strings).'
)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT = re.compile(r"\{[\s\S]*\}")


class ReportModel(BaseModel):
    score: float = Field(..., ge=0, le=100)
    headline: str
    narrative: str
    observations: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class ReportResult:
    score: float
    headline: str
    narrative: str
    observations: tuple[str, ...] = ()
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "headline": self.headline,
            "narrative": self.narrative,
            "observations": list(self.observations),
        }


class ReportBackend(Protocol):
    name: str

    async def complete(self, payload: dict[str, Any]) -> str:
        """Return the raw model text for a payload."""
        ...


@dataclass
class ReportConfig:
    max_attempts: int = 2
    retry_delay: float = 1.5


def build_payload(before: FeatureRecord, after: Optional[FeatureRecord] = None) -> dict[str, Any]:
    return {
        "before": before.to_dict(),
        "after": after.to_dict() if after is not None else None,
    }


def extract_json(text: str) -> str:
    """Strip markdown fences and surrounding chatter from a model reply."""
    clean = text.strip()
    m = _FENCE.search(clean)
    if m:
        clean = m.group(1).strip()
    m = _OBJECT.search(clean)
    if m:
        clean = m.group(0)
    return clean


def parse_report(text: str) -> ReportResult:
    try:
        model = ReportModel.model_validate_json(extract_json(text))
    except ValidationError as exc:
        raise ReportBackendError(f"invalid report: {exc.error_count()} error(s)") from exc
    return ReportResult(
        score=model.score,
        headline=model.headline,
        narrative=model.narrative,
        observations=tuple(model.observations),
    )


def fallback_report(error: Optional[BaseException] = None) -> ReportResult:
    reason = str(error) if error is not None else "unknown error"
    return ReportResult(
        score=50.0,
        headline="Analysis temporarily limited",
        narrative=(
            f"The report could not be generated ({reason}). "
            "Your biometric data is safe and shown above."
        ),
        observations=("Compatibility mode enabled",),
        fallback=True,
    )


class ReportGenerator:
    def __init__(
        self,
        backends: Sequence[ReportBackend],
        cfg: Optional[ReportConfig] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.backends = list(backends)
        self.cfg = cfg or ReportConfig()
        self._sleep = sleep

    async def generate(
        self, before: FeatureRecord, after: Optional[FeatureRecord] = None
    ) -> ReportResult:
        payload = build_payload(before, after)
        last_error: Optional[BaseException] = None
        for backend in self.backends:
            for attempt in range(1, self.cfg.max_attempts + 1):
                try:
                    text = await backend.complete(payload)
                    if not text:
                        raise ReportBackendError(f"empty response from {backend.name}")
                    result = parse_report(text)
                except Exception as exc:
                    last_error = exc
                    logger.warning(
                        "Report backend %s failed (attempt %d): %s", backend.name, attempt, exc
                    )
                    if attempt < self.cfg.max_attempts:
                        await self._sleep(self.cfg.retry_delay)
                    continue
                logger.info("Report generated by %s", backend.name)
                return result
        logger.error("All report backends failed; using fallback report")
        return fallback_report(last_error)


class OpenAIReportBackend:
    """Chat-completions backend in JSON mode (AsyncOpenAI, imported lazily)."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        client: Any = None,
        timeout: float = 20.0,
        temperature: float = 0.3,
    ) -> None:
        self.name = model
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(timeout=self.timeout)
        return self._client

    async def complete(self, payload: dict[str, Any]) -> str:
        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
            ],
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""


# (label, section, field, unit)
COMPARISON_FIELDS = (
    ("HRV", "pulse", "hrv", "ms"),
    ("Heart rate", "pulse", "heart_rate", "bpm"),
    ("Respiration rate", "pulse", "respiration_rate", "br/min"),
    ("Skin homogeneity", "complexion", "homogeneity", "%"),
    ("Skin vitality", "complexion", "vitality", "%"),
    ("Gaze stability", "gaze", "stability", "%"),
    ("Fatigue index", "gaze", "fatigue_index", "%"),
)


def comparison_rows(before: FeatureRecord, after: FeatureRecord) -> list[dict[str, Any]]:
    """Before/after table for exporters: label, values, change and unit."""
    rows = []
    for label, section, name, unit in COMPARISON_FIELDS:
        b = float(getattr(getattr(before, section), name))
        a = float(getattr(getattr(after, section), name))
        rows.append(
            {
                "label": label,
                "unit": unit,
                "before": round(b, 1),
                "after": round(a, 1),
                "change": round(a - b, 1),
            }
        )
    return rows
