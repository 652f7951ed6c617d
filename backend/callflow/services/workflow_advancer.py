from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import os
import logging

logger = logging.getLogger(__name__)

GRACE_DELAY = timedelta(seconds=60)

# Dispositions after which a lead should not get more scripted steps.
# Only consulted when WORKFLOW_STOP_ON_TERMINAL is enabled.
TERMINAL_DISPOSITIONS = ("not_interested", "dnc")

NO_WORKFLOW = "no_workflow"
NOT_CALL_STEP = "not_call_step"
STEP_MISSING = "step_missing"
SKIPPED_TERMINAL = "skipped_terminal"
ADVANCED = "advanced"
COMPLETED = "completed"
CONFLICT = "conflict"


def _parse_time_of_day(value: Any) -> Optional[tuple]:
    try:
        hours, minutes = (int(part) for part in str(value).split(":")[:2])
    except (TypeError, ValueError):
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours, minutes


def compute_next_action_at(step: Dict[str, Any], now: datetime) -> datetime:
    """When the lead should reach ``step``.

    Wait steps add their configured delay and, with ``time_of_day`` ("HH:MM", UTC),
    snap forward to that time, rolling to the next day if the delay already passed it.
    Every other step type runs after a short grace delay.
    """
    if step.get("step_type") != "wait":
        return now + GRACE_DELAY

    config = step.get("step_config") or {}
    delay_minutes = (
        (config.get("delay_minutes") or 0)
        + (config.get("delay_hours") or 0) * 60
        + (config.get("delay_days") or 0) * 1440
    )
    next_at = now + timedelta(minutes=delay_minutes)

    snap = _parse_time_of_day(config.get("time_of_day")) if config.get("time_of_day") else None
    if snap:
        snapped = next_at.replace(hour=snap[0], minute=snap[1], second=0, microsecond=0)
        if snapped < next_at:
            snapped += timedelta(days=1)
        next_at = snapped
    return next_at


def stop_on_terminal() -> bool:
    return str(os.getenv("WORKFLOW_STOP_ON_TERMINAL", "false")).lower() in ("1", "true", "yes")


def advance_workflow(db, lead_id: str, disposition: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Move the lead's active workflow past its current call step.

    Returns one of the result constants above. The write only lands if the progress row
    still points at the step that was read, so two racing deliveries advance once.
    """
    now = now or datetime.now(timezone.utc)

    if disposition in TERMINAL_DISPOSITIONS and stop_on_terminal():
        logger.info(f"Skipping workflow advancement for terminal disposition: {disposition}")
        return SKIPPED_TERMINAL

    progress = db.get_active_workflow_progress(lead_id)
    if not progress:
        return NO_WORKFLOW

    current_step_id = progress.get("current_step_id")
    current = db.get_workflow_step(current_step_id) if current_step_id else None
    if not current or current.get("step_type") != "call":
        logger.info(f"Lead {lead_id} workflow is not on a call step, nothing to advance")
        return NOT_CALL_STEP

    steps = db.list_workflow_steps(progress["workflow_id"])
    index = next((i for i, s in enumerate(steps) if s["id"] == current["id"]), None)
    if index is None:
        logger.warning(f"Current step {current['id']} not found in workflow {progress['workflow_id']}")
        return STEP_MISSING

    if index + 1 < len(steps):
        next_step = steps[index + 1]
        patch = {
            "current_step_id": next_step["id"],
            "next_action_at": compute_next_action_at(next_step, now).isoformat(),
            "last_action_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        result = ADVANCED
    else:
        patch = {
            "status": "completed",
            "completed_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        result = COMPLETED

    if not db.update_workflow_progress(progress["id"], current["id"], patch):
        logger.warning(f"Workflow progress {progress['id']} changed underneath us, not advancing")
        return CONFLICT

    if result == ADVANCED:
        logger.info(f"Advanced workflow for lead {lead_id} to step {steps[index + 1].get('step_number')}")
    else:
        logger.info(f"Workflow completed for lead {lead_id}")
    return result
