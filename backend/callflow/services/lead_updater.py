from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

CALLBACK_DELAY = timedelta(hours=24)

LEAD_STATUS_BY_DISPOSITION = {
    "appointment_set": "qualified",
    "interested": "interested",
    "callback_requested": "callback",
    "not_interested": "not_interested",
    "dnc": "dnc",
}


def lead_status_for(disposition: str) -> str:
    return LEAD_STATUS_BY_DISPOSITION.get(disposition, "contacted")


def build_call_note(disposition: str, duration_seconds: Optional[int], summary: Optional[str], now: datetime) -> str:
    duration = f"{duration_seconds // 60}m {duration_seconds % 60}s" if duration_seconds else "N/A"
    lines = [
        f"CALL LOG - {now.strftime('%m/%d/%y %H:%M')} UTC",
        f"Outcome: {disposition.replace('_', ' ').title()}",
        f"Duration: {duration}",
        "",
        f"Summary: {summary or 'Call completed'}",
    ]
    if disposition == "callback_requested":
        lines += ["", "Next: Callback scheduled"]
    elif disposition == "appointment_set":
        lines += ["", "Next: Appointment confirmed"]
    return "\n".join(lines)


def build_lead_patch(disposition: str, now: Optional[datetime] = None, existing_notes: Optional[str] = None, call_note: Optional[str] = None) -> Dict[str, Any]:
    """State patch for a lead after a call.

    Callbacks are scheduled a fixed 24h out. The do-not-call flag is only ever set here,
    never cleared.
    """
    now = now or datetime.now(timezone.utc)
    patch: Dict[str, Any] = {
        "status": lead_status_for(disposition),
        "last_contacted_at": now.isoformat(),
    }
    if disposition == "callback_requested":
        patch["next_callback_at"] = (now + CALLBACK_DELAY).isoformat()
    if disposition == "dnc":
        patch["do_not_call"] = True
    if call_note:
        patch["notes"] = ((existing_notes or "") + "\n\n" + call_note).strip()
    return patch


def apply_lead_update(
    db,
    lead_id: str,
    disposition: str,
    user_id: Optional[str] = None,
    duration_seconds: Optional[int] = None,
    summary: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    lead = db.get_lead(lead_id) or {}
    note = build_call_note(disposition, duration_seconds, summary, now)
    patch = build_lead_patch(disposition, now, existing_notes=lead.get("notes"), call_note=note)
    db.update_lead(lead_id, patch)
    logger.info(f"Lead {lead_id} -> status {patch['status']}")

    if "next_callback_at" in patch and user_id:
        db.insert_scheduled_follow_up({
            "user_id": user_id,
            "lead_id": lead_id,
            "action_type": "callback",
            "scheduled_at": patch["next_callback_at"],
            "status": "pending",
            "notes": f"Callback requested during call - {summary or 'No details'}",
        })
        logger.info(f"Callback for lead {lead_id} scheduled at {patch['next_callback_at']}")
    return patch
