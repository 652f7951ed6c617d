from dataclasses import dataclass
from typing import Any, Dict, Optional
import re


DISPOSITIONS = (
    "completed",
    "voicemail",
    "no_answer",
    "busy",
    "failed",
    "unknown",
    "appointment_set",
    "interested",
    "callback_requested",
    "dnc",
    "not_interested",
    "contacted",
)

# Outcomes where nobody was actually reached
NON_CONNECTION_OUTCOMES = ("voicemail", "no_answer", "busy", "failed", "unknown")

SHORT_CALL_SECONDS = 10

_ALIASES = {
    "callback": "callback_requested",
    "call_back": "callback_requested",
    "do_not_call": "dnc",
    "appointment_booked": "appointment_set",
    "booked": "appointment_set",
}

_DISCONNECT_OUTCOMES = {
    "machine_detected": "voicemail",
    "dial_no_answer": "no_answer",
    "dial_busy": "busy",
    "dial_failed": "failed",
}

_CALLBACK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"call\s*(me\s*)?(back|later|again)",
        r"try\s*(me\s*)?(again|later|back)",
        r"not\s*a\s*good\s*time",
        r"busy\s*(right\s*now|at\s*the\s*moment)",
        r"can\s*you\s*(call|try)\s*(back|later|again)",
        r"in\s*(a\s*few|10|15|20|30|an?\s*hour|\d+)\s*(minute|min|hour)",
        r"give\s*me\s*(a\s*few|10|15|20|30|\d+)\s*(minute|min|hour)",
        r"i('m|\s*am)\s*(busy|in\s*a\s*meeting)",
    )
]


@dataclass
class DispositionResult:
    disposition: str
    confidence: float
    summary: str = ""


def normalize_disposition(value: Any) -> Optional[str]:
    """Map free-form labels ("Callback", "do not call") onto the vocabulary, or None."""
    if not value or not isinstance(value, str):
        return None
    key = re.sub(r"[\s\-]+", "_", value.strip().lower())
    key = _ALIASES.get(key, key)
    return key if key in DISPOSITIONS else None


def map_call_status(call_status: Optional[str], disconnection_reason: Optional[str] = None, duration_seconds: Optional[int] = None) -> str:
    # Very short calls are treated as no answer whatever the provider reported
    if duration_seconds is not None and duration_seconds < SHORT_CALL_SECONDS:
        return "no_answer"
    if call_status == "ended":
        return _DISCONNECT_OUTCOMES.get(disconnection_reason or "", "completed")
    if call_status == "error":
        return "failed"
    return "unknown"


def _field(analysis: Any, name: str) -> Any:
    if isinstance(analysis, dict):
        return analysis.get(name)
    return getattr(analysis, name, None)


def has_callback_phrase(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(p.search(text) for p in _CALLBACK_PATTERNS)


def classify_analysis(analysis: Any, transcript: Optional[str] = None) -> DispositionResult:
    """Derive a disposition from the provider's structured post-call analysis.

    Explicit markers in ``custom_analysis_data`` win, then callback phrasing in the
    transcript (or call summary), then the sentiment/success combination.
    """
    summary = _field(analysis, "call_summary") or ""
    sentiment = (_field(analysis, "user_sentiment") or "neutral").lower()
    successful = bool(_field(analysis, "call_successful"))
    custom: Dict[str, Any] = _field(analysis, "custom_analysis_data") or {}

    explicit = normalize_disposition(custom.get("disposition"))
    if explicit:
        return DispositionResult(explicit, 0.9, summary)
    if custom.get("appointment_set") or custom.get("booked"):
        return DispositionResult("appointment_set", 0.95, summary)
    if custom.get("callback_requested") or custom.get("call_back"):
        return DispositionResult("callback_requested", 0.85, summary)
    if custom.get("dnc") or custom.get("do_not_call"):
        return DispositionResult("dnc", 0.95, summary)
    if custom.get("not_interested"):
        return DispositionResult("not_interested", 0.8, summary)

    if has_callback_phrase(transcript or summary):
        return DispositionResult("callback_requested", 0.85, summary)

    if sentiment == "negative":
        return DispositionResult("not_interested", 0.8, summary)
    if successful and sentiment == "positive":
        return DispositionResult("interested", 0.7, summary)
    return DispositionResult("contacted", 0.5, summary)


def merge_outcomes(status_outcome: str, analyzed: DispositionResult) -> DispositionResult:
    """Keep a hard non-connection outcome unless the analysis found a stronger intent."""
    if status_outcome in NON_CONNECTION_OUTCOMES and analyzed.disposition == "contacted":
        return DispositionResult(status_outcome, analyzed.confidence, analyzed.summary)
    return analyzed


def classify_call(
    call_status: Optional[str],
    disconnection_reason: Optional[str] = None,
    duration_seconds: Optional[int] = None,
    analysis: Any = None,
    transcript: Optional[str] = None,
) -> DispositionResult:
    status_outcome = map_call_status(call_status, disconnection_reason, duration_seconds)
    if duration_seconds is not None and duration_seconds < SHORT_CALL_SECONDS:
        return DispositionResult(status_outcome, 1.0)
    if analysis is not None:
        return merge_outcomes(status_outcome, classify_analysis(analysis, transcript))
    return DispositionResult(status_outcome, 1.0)
