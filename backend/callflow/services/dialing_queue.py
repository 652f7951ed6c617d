from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)

RETRY_ELIGIBLE_OUTCOMES = ("no_answer", "voicemail", "busy", "failed", "unknown")
RETRY_DELAY = timedelta(minutes=30)
CALLBACK_PRIORITY = 5


def settle_queue_entry(db, lead_id: str, campaign_id: str, outcome: str, now: Optional[datetime] = None) -> Optional[str]:
    """Reschedule or close the dialing-queue entry that placed this call.

    Returns the new entry status, or None when the call did not come from the queue.
    """
    now = now or datetime.now(timezone.utc)
    entry = db.get_calling_queue_entry(lead_id, campaign_id)
    if not entry:
        return None

    attempts = entry.get("attempts") or 1
    max_attempts = entry.get("max_attempts") or 3
    retryable = outcome in RETRY_ELIGIBLE_OUTCOMES

    if retryable and attempts < max_attempts:
        db.update_dialing_queue_entry(entry["id"], {
            "status": "pending",
            "scheduled_at": (now + RETRY_DELAY).isoformat(),
            "updated_at": now.isoformat(),
        })
        logger.info(f"Scheduled retry for lead {lead_id}: {attempts}/{max_attempts} in 30 minutes")
        return "pending"

    status = "failed" if retryable else "completed"
    db.update_dialing_queue_entry(entry["id"], {"status": status, "updated_at": now.isoformat()})
    logger.info(f"Dialing queue marked {status} for lead {lead_id}")
    return status


def queue_callback(db, lead_id: str, campaign_id: str, phone_number: str, callback_at: str) -> None:
    db.replace_pending_queue_entries(lead_id, {
        "campaign_id": campaign_id,
        "phone_number": phone_number,
        "status": "pending",
        "scheduled_at": callback_at,
        "priority": CALLBACK_PRIORITY,
        "max_attempts": 3,
        "attempts": 0,
    })
    logger.info(f"Queued callback for lead {lead_id} at {callback_at}")
