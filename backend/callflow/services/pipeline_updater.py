from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

# Candidate board-name fragments per disposition, most specific first
STAGE_CANDIDATES = {
    "appointment_set": ["appointment", "booked", "qualified"],
    "interested": ["interested", "warm", "hot"],
    "callback_requested": ["callback", "call back", "follow up", "follow-up"],
    "not_interested": ["not interested", "lost"],
    "dnc": ["do not call", "dnc"],
    "contacted": ["contacted", "reached"],
    "completed": ["contacted", "reached"],
    "voicemail": ["voicemail", "attempted"],
    "no_answer": ["no answer", "attempted"],
    "busy": ["attempted"],
}

# Fragments that disqualify an otherwise matching board
STAGE_EXCLUSIONS = {
    "interested": ("not interested",),
    "contacted": ("not contacted",),
    "completed": ("not contacted",),
}


def match_board(disposition: str, boards: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    excluded = STAGE_EXCLUSIONS.get(disposition, ())
    for candidate in STAGE_CANDIDATES.get(disposition, []):
        for board in boards:
            name = (board.get("name") or "").lower()
            if candidate in name and not any(e in name for e in excluded):
                return board
    return None


def update_pipeline_position(db, lead_id: str, user_id: str, disposition: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Place the lead on the board matching its disposition.

    Positions on other boards are left untouched, so a lead can sit on several boards.
    Returns the matched board, or None when the user has no matching board.
    """
    now = now or datetime.now(timezone.utc)
    board = match_board(disposition, db.list_pipeline_boards(user_id))
    if not board:
        logger.info(f"No pipeline board matches '{disposition}' for user {user_id}")
        return None

    notes = f"Auto-moved after call: {disposition}"
    existing = db.get_pipeline_position(lead_id, user_id, board["id"])
    if existing:
        db.update_pipeline_position(existing["id"], {"moved_at": now.isoformat(), "notes": notes})
    else:
        db.insert_pipeline_position({
            "lead_id": lead_id,
            "user_id": user_id,
            "pipeline_board_id": board["id"],
            "moved_at": now.isoformat(),
            "moved_by_user": False,
            "notes": notes,
        })
    logger.info(f"Moved lead {lead_id} to board '{board.get('name')}'")
    return board
