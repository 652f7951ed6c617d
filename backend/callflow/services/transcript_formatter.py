from typing import Any, Iterable, Optional


def format_transcript(transcript_object: Optional[Iterable[Any]], raw_transcript: Optional[str] = None) -> str:
    """Flatten turn-by-turn transcript entries into "AI: ..." / "Lead: ..." lines.

    Entries may be dicts or objects with ``role`` and ``content``. Falls back to the
    provider's raw transcript string when no turns are present.
    """
    lines = []
    for entry in transcript_object or []:
        if isinstance(entry, dict):
            role, content = entry.get("role"), entry.get("content")
        else:
            role, content = getattr(entry, "role", None), getattr(entry, "content", None)
        speaker = "AI" if role == "agent" else "Lead"
        lines.append(f"{speaker}: {content or ''}")
    if lines:
        return "\n".join(lines)
    return raw_transcript or ""
