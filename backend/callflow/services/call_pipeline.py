"""Apply a finished call's outcome to the lead, its pipeline, nudges and workflow.

Every downstream step is best-effort: a failure is logged, recorded as a
``system_alerts`` row for manual review, and the remaining steps still run.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from ..schemas.pydantic_schemas import CallMetadata, RetellCall
from .dialing_queue import queue_callback, settle_queue_entry
from .edge_functions import EdgeFunctionClient
from .lead_updater import apply_lead_update
from .nudge_tracker import update_nudge_tracking
from .outcome_classifier import SHORT_CALL_SECONDS, classify_call, merge_outcomes
from .pipeline_updater import update_pipeline_position
from .transcript_formatter import format_transcript
from .workflow_advancer import advance_workflow

logger = logging.getLogger(__name__)

PROCESSED_EVENTS = ("call_ended", "call_analyzed")

# Shorter transcripts are not worth sending to the analyser
MIN_ANALYSIS_TRANSCRIPT_CHARS = 50


class UnresolvedUserError(Exception):
    """No owning user could be found for a call."""


def _iso_from_millis(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()


def log_failed_operation(db, user_id: Optional[str], operation: str, details: Dict[str, Any]) -> None:
    if not user_id:
        return
    try:
        db.insert_system_alert({
            "user_id": user_id,
            "alert_type": "failed_operation",
            "severity": "warning",
            "title": f"Failed Operation: {operation}",
            "message": f"A {operation} operation failed and may need manual review.",
            "metadata": {
                "operationType": operation,
                **details,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "requiresRetry": True,
            },
        })
    except Exception as e:
        logger.error(f"Failed to record {operation} failure: {e}")


class _Steps:
    def __init__(self, db, user_id: str, call_id: str, lead_id: Optional[str]) -> None:
        self.db = db
        self.user_id = user_id
        self.call_id = call_id
        self.lead_id = lead_id
        self.failed: List[str] = []

    def _record(self, name: str, error: Exception) -> None:
        logger.exception(f"{name} failed for call {self.call_id}")
        self.failed.append(name)
        log_failed_operation(self.db, self.user_id, name, {
            "callId": self.call_id,
            "leadId": self.lead_id,
            "error": str(error),
        })

    def run(self, name: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            self._record(name, e)
            return None

    async def run_async(self, name: str, fn, *args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            self._record(name, e)
            return None


def resolve_owner(db, call: RetellCall) -> Dict[str, Optional[str]]:
    """user/lead/campaign ids from metadata, falling back to an earlier call log row."""
    metadata = call.metadata or CallMetadata()
    owner = {"user_id": metadata.user_id, "lead_id": metadata.lead_id, "campaign_id": metadata.campaign_id}
    if not owner["user_id"]:
        logger.info(f"user_id missing from metadata for call {call.call_id}, looking up call log")
        existing = db.get_call_log(call.call_id) or {}
        owner["user_id"] = existing.get("user_id")
        owner["lead_id"] = owner["lead_id"] or existing.get("lead_id")
        owner["campaign_id"] = owner["campaign_id"] or existing.get("campaign_id")
    if not owner["user_id"]:
        raise UnresolvedUserError(f"Could not determine user_id for call {call.call_id}")
    return owner


async def process_call_event(
    event: str,
    call: RetellCall,
    db,
    functions: Optional[EdgeFunctionClient] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    functions = functions or EdgeFunctionClient()

    owner = resolve_owner(db, call)
    user_id, lead_id, campaign_id = owner["user_id"], owner["lead_id"], owner["campaign_id"]
    steps = _Steps(db, user_id, call.call_id, lead_id)

    duration = call.duration_seconds
    transcript = format_transcript(call.transcript_object, call.transcript)
    result = classify_call(call.call_status, call.disconnection_reason, duration, call.call_analysis, transcript)
    logger.info(f"Call {call.call_id} classified as {result.disposition} ({result.confidence})")

    row = {
        "retell_call_id": call.call_id,
        "user_id": user_id,
        "lead_id": lead_id,
        "campaign_id": campaign_id,
        "phone_number": call.to_number or "",
        "caller_id": call.from_number or (call.metadata.caller_id if call.metadata else None) or "",
        "status": "completed" if call.call_status == "ended" else call.call_status,
        "duration_seconds": duration or 0,
        "notes": transcript,
        "answered_at": _iso_from_millis(call.start_timestamp),
        "ended_at": _iso_from_millis(call.end_timestamp),
    }
    row = {k: v for k, v in row.items() if v is not None}
    ack = {
        "received": True,
        "processed": True,
        "callId": call.call_id,
        "disposition": result.disposition,
        "leadId": lead_id,
    }

    # Analysis and everything after it run once per (call, event) delivery
    claimed = steps.run("delivery_claim", db.claim_webhook_delivery, call.call_id, event)
    if claimed is False:
        logger.info(f"Duplicate {event} delivery for call {call.call_id}, skipping downstream updates")
        # Refresh the call record but keep the outcome already stored for it
        call_log = steps.run("call_log_upsert", db.upsert_call_log, row) or {}
        ack["disposition"] = call_log.get("outcome") or result.disposition
        ack["duplicate"] = True
        return ack

    try:
        # 1. Call record, keyed by provider call id
        call_log = steps.run("call_log_upsert", db.upsert_call_log, {**row, "outcome": result.disposition}) or {}

        # 2. Transcript analysis when the provider sent none
        short_call = duration is not None and duration < SHORT_CALL_SECONDS
        if call.call_analysis is None and not short_call and len(transcript) > MIN_ANALYSIS_TRANSCRIPT_CHARS:
            analyzed = await steps.run_async("transcript_analysis", functions.analyze_transcript, transcript, user_id, call_log.get("id"))
            if analyzed:
                result = merge_outcomes(result.disposition, analyzed)
                steps.run("call_log_outcome", db.update_call_log, call.call_id, {"outcome": result.disposition})
        outcome = ack["disposition"] = result.disposition

        if lead_id and campaign_id:
            steps.run("dialing_queue", settle_queue_entry, db, lead_id, campaign_id, outcome, now)

        if lead_id:
            patch = steps.run(
                "lead_update", apply_lead_update, db, lead_id, outcome,
                user_id=user_id, duration_seconds=duration, summary=result.summary, now=now,
            )
            if patch and patch.get("next_callback_at") and campaign_id:
                steps.run("callback_queue", queue_callback, db, lead_id, campaign_id, call.to_number or "", patch["next_callback_at"])

            await steps.run_async("disposition_routing", functions.route_disposition, lead_id, user_id, outcome, transcript)
            steps.run("nudge_tracking", update_nudge_tracking, db, lead_id, user_id, outcome, now)
            steps.run("pipeline_position", update_pipeline_position, db, lead_id, user_id, outcome, now)
            steps.run("workflow_advance", advance_workflow, db, lead_id, outcome, now)

        if call.from_number:
            steps.run("phone_usage", db.increment_phone_daily_calls, call.from_number, now.isoformat())
    except BaseException:
        # Cancelled or crashed mid-way: let the provider's retry take the delivery again
        if claimed:
            logger.warning(f"Processing of {event} for call {call.call_id} interrupted, releasing delivery")
            steps.run("delivery_release", db.release_webhook_delivery, call.call_id, event)
        raise

    if claimed:
        steps.run("delivery_finish", db.finish_webhook_delivery, call.call_id, event, steps.failed)

    logger.info(f"Processing complete for call {call.call_id}")
    return ack
