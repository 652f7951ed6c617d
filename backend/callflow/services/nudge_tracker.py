from datetime import datetime, timezone
from typing import Any, Dict, Optional

ENGAGED_DISPOSITIONS = ("interested", "appointment_set", "callback_requested")

PAUSE_REASONS = {
    "appointment_set": "Appointment set",
    "dnc": "Lead asked not to be called",
    "not_interested": "Lead not interested",
}


def nudge_state(disposition: str, now: datetime) -> Dict[str, Any]:
    paused = disposition in PAUSE_REASONS
    return {
        "last_ai_contact_at": now.isoformat(),
        "is_engaged": disposition in ENGAGED_DISPOSITIONS,
        "sequence_paused": paused,
        "pause_reason": PAUSE_REASONS.get(disposition),
        "updated_at": now.isoformat(),
    }


def update_nudge_tracking(db, lead_id: str, user_id: str, disposition: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    state = nudge_state(disposition, now)
    existing = db.get_nudge_tracking(lead_id)
    if existing:
        db.update_nudge_tracking(existing["id"], state)
    else:
        db.insert_nudge_tracking({"lead_id": lead_id, "user_id": user_id, "nudge_count": 0, **state})
    return state
