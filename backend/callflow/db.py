from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4
import os
import threading
import logging
from datetime import datetime, timedelta, timezone

# Lightweight adapter over Supabase client. Keep an in-memory fallback when SUPABASE_URL is missing.
from supabase import create_client, Client

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when only part of the Supabase configuration is present."""


class IntegrityError(RuntimeError):
    """Raised when stored rows violate an invariant the pipeline relies on."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# A delivery still "processing" after this long belonged to an interrupted request
DELIVERY_CLAIM_TTL = timedelta(minutes=5)


def _claim_is_stale(row: Dict[str, Any], now: datetime) -> bool:
    if row.get("status") == "failed":
        return True
    if row.get("status") != "processing":
        return False
    received_at = row.get("received_at")
    if not received_at:
        return True
    return datetime.fromisoformat(received_at) <= now - DELIVERY_CLAIM_TTL


class InMemoryDB:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        # call_logs keyed by provider (retell) call id, mirroring the upsert key
        self.call_logs: Dict[str, Dict[str, Any]] = {}
        self.leads: Dict[str, Dict[str, Any]] = {}
        self.pipeline_boards: Dict[str, Dict[str, Any]] = {}
        self.lead_pipeline_positions: Dict[str, Dict[str, Any]] = {}
        self.lead_nudge_tracking: Dict[str, Dict[str, Any]] = {}
        self.workflow_steps: Dict[str, Dict[str, Any]] = {}
        self.lead_workflow_progress: Dict[str, Dict[str, Any]] = {}
        self.phone_numbers: Dict[str, Dict[str, Any]] = {}
        self.dialing_queues: Dict[str, Dict[str, Any]] = {}
        self.scheduled_follow_ups: List[Dict[str, Any]] = []
        self.system_alerts: List[Dict[str, Any]] = []
        self.webhook_deliveries: Dict[Tuple[str, str], Dict[str, Any]] = {}

    # Seeding helpers for local runs; rows normally come from the dashboard
    def insert_lead(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), "status": "new", "notes": "", "do_not_call": False, **row}
        self.leads[obj["id"]] = obj
        return obj

    def insert_pipeline_board(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), "position": len(self.pipeline_boards), **row}
        self.pipeline_boards[obj["id"]] = obj
        return obj

    def insert_workflow_step(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), "step_config": {}, **row}
        self.workflow_steps[obj["id"]] = obj
        return obj

    def insert_workflow_progress(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), "status": "active", "next_action_at": None, "completed_at": None, **row}
        with self._lock:
            if obj["status"] == "active" and any(
                p["lead_id"] == obj["lead_id"] and p["status"] == "active"
                for p in self.lead_workflow_progress.values()
            ):
                raise IntegrityError(f"lead {obj['lead_id']} already has an active workflow")
            self.lead_workflow_progress[obj["id"]] = obj
        return obj

    def insert_phone_number(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), "daily_calls": 0, "last_used": None, "status": "active", **row}
        self.phone_numbers[obj["number"]] = obj
        return obj

    def insert_dialing_queue_entry(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), "attempts": 0, "max_attempts": 3, "updated_at": _now_iso(), **row}
        self.dialing_queues[obj["id"]] = obj
        return obj

    # Call logs
    def get_call_log(self, retell_call_id: str) -> Optional[Dict[str, Any]]:
        return self.call_logs.get(retell_call_id)

    def upsert_call_log(self, row: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            existing = self.call_logs.get(row["retell_call_id"])
            if existing:
                existing.update(row)
                existing["updated_at"] = _now_iso()
                return existing
            obj = {"id": str(uuid4()), "created_at": _now_iso(), **row}
            self.call_logs[row["retell_call_id"]] = obj
            return obj

    def update_call_log(self, retell_call_id: str, patch: Dict[str, Any]) -> None:
        if retell_call_id in self.call_logs:
            self.call_logs[retell_call_id].update(patch)

    def list_call_logs(self, user_id: Optional[str], outcome: Optional[str], page: int, page_size: int) -> Tuple[List[Dict[str, Any]], int]:
        items = sorted(self.call_logs.values(), key=lambda c: c.get("created_at") or "", reverse=True)
        if user_id:
            items = [c for c in items if c.get("user_id") == user_id]
        if outcome:
            items = [c for c in items if c.get("outcome") == outcome]
        total = len(items)
        start = (page - 1) * page_size
        return items[start:start + page_size], total

    # Leads
    def get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        return self.leads.get(lead_id)

    def update_lead(self, lead_id: str, patch: Dict[str, Any]) -> None:
        if lead_id not in self.leads:
            raise LookupError(f"lead {lead_id} not found")
        self.leads[lead_id].update(patch)

    # Pipeline
    def list_pipeline_boards(self, user_id: str) -> List[Dict[str, Any]]:
        boards = [b for b in self.pipeline_boards.values() if b.get("user_id") == user_id]
        return sorted(boards, key=lambda b: b.get("position") or 0)

    def get_pipeline_position(self, lead_id: str, user_id: str, board_id: str) -> Optional[Dict[str, Any]]:
        for pos in self.lead_pipeline_positions.values():
            if pos["lead_id"] == lead_id and pos["user_id"] == user_id and pos["pipeline_board_id"] == board_id:
                return pos
        return None

    def list_pipeline_positions(self, lead_id: str) -> List[Dict[str, Any]]:
        return [p for p in self.lead_pipeline_positions.values() if p["lead_id"] == lead_id]

    def update_pipeline_position(self, position_id: str, patch: Dict[str, Any]) -> None:
        self.lead_pipeline_positions[position_id].update(patch)

    def insert_pipeline_position(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), **row}
        self.lead_pipeline_positions[obj["id"]] = obj
        return obj

    # Nudge tracking
    def get_nudge_tracking(self, lead_id: str) -> Optional[Dict[str, Any]]:
        return self.lead_nudge_tracking.get(lead_id)

    def update_nudge_tracking(self, tracking_id: str, patch: Dict[str, Any]) -> None:
        for row in self.lead_nudge_tracking.values():
            if row["id"] == tracking_id:
                row.update(patch)
                return

    def insert_nudge_tracking(self, row: Dict[str, Any]) -> Dict[str, Any]:
        obj = {"id": str(uuid4()), **row}
        self.lead_nudge_tracking[obj["lead_id"]] = obj
        return obj

    # Workflows
    def get_active_workflow_progress(self, lead_id: str) -> Optional[Dict[str, Any]]:
        rows = [p for p in self.lead_workflow_progress.values() if p["lead_id"] == lead_id and p["status"] == "active"]
        if len(rows) > 1:
            raise IntegrityError(f"lead {lead_id} has {len(rows)} active workflows")
        return rows[0] if rows else None

    def get_workflow_step(self, step_id: str) -> Optional[Dict[str, Any]]:
        return self.workflow_steps.get(step_id)

    def list_workflow_steps(self, workflow_id: str) -> List[Dict[str, Any]]:
        steps = [s for s in self.workflow_steps.values() if s["workflow_id"] == workflow_id]
        return sorted(steps, key=lambda s: s["step_number"])

    def update_workflow_progress(self, progress_id: str, expected_step_id: str, patch: Dict[str, Any]) -> bool:
        with self._lock:
            row = self.lead_workflow_progress.get(progress_id)
            if not row or row["status"] != "active" or row["current_step_id"] != expected_step_id:
                return False
            row.update(patch)
            return True

    # Phone numbers
    def increment_phone_daily_calls(self, number: str, used_at: str) -> Optional[int]:
        with self._lock:
            row = self.phone_numbers.get(number)
            if not row:
                return None
            row["daily_calls"] = (row.get("daily_calls") or 0) + 1
            row["last_used"] = used_at
            return row["daily_calls"]

    # Dialing queues
    def get_calling_queue_entry(self, lead_id: str, campaign_id: str) -> Optional[Dict[str, Any]]:
        rows = [
            q for q in self.dialing_queues.values()
            if q["lead_id"] == lead_id and q["campaign_id"] == campaign_id and q["status"] == "calling"
        ]
        rows.sort(key=lambda q: q.get("updated_at") or "", reverse=True)
        return rows[0] if rows else None

    def update_dialing_queue_entry(self, entry_id: str, patch: Dict[str, Any]) -> None:
        self.dialing_queues[entry_id].update(patch)

    def replace_pending_queue_entries(self, lead_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            for qid in [qid for qid, q in self.dialing_queues.items() if q["lead_id"] == lead_id and q["status"] in ("pending", "failed")]:
                del self.dialing_queues[qid]
        return self.insert_dialing_queue_entry({**row, "lead_id": lead_id})

    # Follow-ups and alerts
    def insert_scheduled_follow_up(self, row: Dict[str, Any]) -> None:
        self.scheduled_follow_ups.append({"id": str(uuid4()), **row})

    def insert_system_alert(self, row: Dict[str, Any]) -> None:
        self.system_alerts.append({"id": str(uuid4()), "created_at": _now_iso(), **row})

    # Webhook delivery dedup
    def claim_webhook_delivery(self, provider_call_id: str, event_type: str) -> bool:
        """Claim a delivery; failed or abandoned claims can be taken over by a retry."""
        key = (provider_call_id, event_type)
        now = datetime.now(timezone.utc)
        with self._lock:
            existing = self.webhook_deliveries.get(key)
            if existing and not _claim_is_stale(existing, now):
                return False
            self.webhook_deliveries[key] = {
                "provider_call_id": provider_call_id,
                "event_type": event_type,
                "status": "processing",
                "failed_steps": [],
                "received_at": now.isoformat(),
            }
            return True

    def release_webhook_delivery(self, provider_call_id: str, event_type: str) -> None:
        with self._lock:
            self.webhook_deliveries.pop((provider_call_id, event_type), None)

    def finish_webhook_delivery(self, provider_call_id: str, event_type: str, failed_steps: List[str]) -> None:
        row = self.webhook_deliveries.get((provider_call_id, event_type))
        if row:
            row.update({"status": "failed" if failed_steps else "processed", "failed_steps": failed_steps, "finished_at": _now_iso()})


class SupabaseDB:
    def __init__(self, client: Client) -> None:
        self.client = client

    # Call logs
    def get_call_log(self, retell_call_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("call_logs").select("*").eq("retell_call_id", retell_call_id).limit(1).execute()
        return (res.data or [None])[0]

    def upsert_call_log(self, row: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table("call_logs").upsert(row, on_conflict="retell_call_id").execute()
        return (res.data or [row])[0]

    def update_call_log(self, retell_call_id: str, patch: Dict[str, Any]) -> None:
        self.client.table("call_logs").update(patch).eq("retell_call_id", retell_call_id).execute()

    def list_call_logs(self, user_id: Optional[str], outcome: Optional[str], page: int, page_size: int) -> Tuple[List[Dict[str, Any]], int]:
        query = self.client.table("call_logs").select("*", count="exact")
        if user_id:
            query = query.eq("user_id", user_id)
        if outcome:
            query = query.eq("outcome", outcome)
        start = (page - 1) * page_size
        end = start + page_size - 1
        res = query.order("created_at", desc=True).range(start, end).execute()
        items = res.data or []
        total = res.count if res.count is not None else len(items)
        return items, total

    # Leads
    def get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("leads").select("id,status,notes,first_name,do_not_call,user_id").eq("id", lead_id).limit(1).execute()
        return (res.data or [None])[0]

    def update_lead(self, lead_id: str, patch: Dict[str, Any]) -> None:
        self.client.table("leads").update(patch).eq("id", lead_id).execute()

    # Pipeline
    def list_pipeline_boards(self, user_id: str) -> List[Dict[str, Any]]:
        res = self.client.table("pipeline_boards").select("id,name,position").eq("user_id", user_id).order("position", desc=False).execute()
        return res.data or []

    def get_pipeline_position(self, lead_id: str, user_id: str, board_id: str) -> Optional[Dict[str, Any]]:
        res = (
            self.client.table("lead_pipeline_positions")
            .select("*")
            .eq("lead_id", lead_id)
            .eq("user_id", user_id)
            .eq("pipeline_board_id", board_id)
            .limit(1)
            .execute()
        )
        return (res.data or [None])[0]

    def update_pipeline_position(self, position_id: str, patch: Dict[str, Any]) -> None:
        self.client.table("lead_pipeline_positions").update(patch).eq("id", position_id).execute()

    def insert_pipeline_position(self, row: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table("lead_pipeline_positions").insert(row).execute()
        return (res.data or [row])[0]

    # Nudge tracking
    def get_nudge_tracking(self, lead_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("lead_nudge_tracking").select("id,nudge_count").eq("lead_id", lead_id).limit(1).execute()
        return (res.data or [None])[0]

    def update_nudge_tracking(self, tracking_id: str, patch: Dict[str, Any]) -> None:
        self.client.table("lead_nudge_tracking").update(patch).eq("id", tracking_id).execute()

    def insert_nudge_tracking(self, row: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table("lead_nudge_tracking").insert(row).execute()
        return (res.data or [row])[0]

    # Workflows
    def get_active_workflow_progress(self, lead_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("lead_workflow_progress").select("*").eq("lead_id", lead_id).eq("status", "active").execute()
        rows = res.data or []
        if len(rows) > 1:
            raise IntegrityError(f"lead {lead_id} has {len(rows)} active workflows")
        return rows[0] if rows else None

    def get_workflow_step(self, step_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("workflow_steps").select("*").eq("id", step_id).limit(1).execute()
        return (res.data or [None])[0]

    def list_workflow_steps(self, workflow_id: str) -> List[Dict[str, Any]]:
        res = self.client.table("workflow_steps").select("*").eq("workflow_id", workflow_id).order("step_number", desc=False).execute()
        return res.data or []

    def update_workflow_progress(self, progress_id: str, expected_step_id: str, patch: Dict[str, Any]) -> bool:
        # Compare-and-swap on current_step_id: a stale reader matches zero rows
        res = (
            self.client.table("lead_workflow_progress")
            .update(patch)
            .eq("id", progress_id)
            .eq("status", "active")
            .eq("current_step_id", expected_step_id)
            .execute()
        )
        return bool(res.data)

    # Phone numbers
    def increment_phone_daily_calls(self, number: str, used_at: str) -> Optional[int]:
        res = self.client.rpc("increment_phone_daily_calls", {"p_number": number, "p_used_at": used_at}).execute()
        return res.data

    # Dialing queues
    def get_calling_queue_entry(self, lead_id: str, campaign_id: str) -> Optional[Dict[str, Any]]:
        res = (
            self.client.table("dialing_queues")
            .select("id,attempts,max_attempts,status")
            .eq("lead_id", lead_id)
            .eq("campaign_id", campaign_id)
            .in_("status", ["calling"])
            .order("updated_at", desc=True)
            .limit(1)
            .execute()
        )
        return (res.data or [None])[0]

    def update_dialing_queue_entry(self, entry_id: str, patch: Dict[str, Any]) -> None:
        self.client.table("dialing_queues").update(patch).eq("id", entry_id).execute()

    def replace_pending_queue_entries(self, lead_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self.client.table("dialing_queues").delete().eq("lead_id", lead_id).in_("status", ["pending", "failed"]).execute()
        res = self.client.table("dialing_queues").insert({**row, "lead_id": lead_id}).execute()
        return (res.data or [row])[0]

    # Follow-ups and alerts
    def insert_scheduled_follow_up(self, row: Dict[str, Any]) -> None:
        self.client.table("scheduled_follow_ups").insert(row).execute()

    def insert_system_alert(self, row: Dict[str, Any]) -> None:
        self.client.table("system_alerts").insert(row).execute()

    # Webhook delivery dedup
    def claim_webhook_delivery(self, provider_call_id: str, event_type: str) -> bool:
        # ignore_duplicates returns only the rows actually inserted
        res = (
            self.client.table("webhook_deliveries")
            .upsert(
                {"provider_call_id": provider_call_id, "event_type": event_type, "status": "processing"},
                on_conflict="provider_call_id,event_type",
                ignore_duplicates=True,
            )
            .execute()
        )
        if res.data:
            return True
        # Take over a failed delivery or one whose request died mid-way
        cutoff = (datetime.now(timezone.utc) - DELIVERY_CLAIM_TTL).strftime("%Y-%m-%dT%H:%M:%SZ")
        res = (
            self.client.table("webhook_deliveries")
            .update({"status": "processing", "failed_steps": [], "received_at": _now_iso(), "finished_at": None})
            .eq("provider_call_id", provider_call_id)
            .eq("event_type", event_type)
            .or_(f"status.eq.failed,and(status.eq.processing,received_at.lt.{cutoff})")
            .execute()
        )
        return bool(res.data)

    def release_webhook_delivery(self, provider_call_id: str, event_type: str) -> None:
        (
            self.client.table("webhook_deliveries")
            .delete()
            .eq("provider_call_id", provider_call_id)
            .eq("event_type", event_type)
            .eq("status", "processing")
            .execute()
        )

    def finish_webhook_delivery(self, provider_call_id: str, event_type: str, failed_steps: List[str]) -> None:
        (
            self.client.table("webhook_deliveries")
            .update({"status": "failed" if failed_steps else "processed", "failed_steps": failed_steps, "finished_at": _now_iso()})
            .eq("provider_call_id", provider_call_id)
            .eq("event_type", event_type)
            .execute()
        )


_client: Optional[Client] = None
_db_instance: Optional[Any] = None


def get_db():
    global _client, _db_instance

    # Ensure environment variables are loaded
    from dotenv import load_dotenv
    load_dotenv()

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if bool(url) != bool(key):
        raise ConfigurationError("Supabase configuration missing: set both SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
    if url and key:
        if _client is None:
            _client = create_client(url, key)
        if _db_instance is None or not isinstance(_db_instance, SupabaseDB):
            _db_instance = SupabaseDB(_client)
        return _db_instance
    if _db_instance is None or not isinstance(_db_instance, InMemoryDB):
        logger.info("SUPABASE_URL not set, using in-memory store")
        _db_instance = InMemoryDB()
    return _db_instance
