"""Shared fixtures: an isolated in-memory store, an HTTP client and data factories."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from callflow import db as db_module
from callflow.db import InMemoryDB

START_MS = 1_700_000_000_000


@pytest.fixture
def db(monkeypatch):
    """Fresh in-memory store installed as the process-wide database."""
    for name in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "RETELL_WEBHOOK_SECRET", "WORKFLOW_STOP_ON_TERMINAL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("dotenv.load_dotenv", lambda *args, **kwargs: False)
    store = InMemoryDB()
    monkeypatch.setattr(db_module, "_db_instance", store)
    return store


@pytest.fixture
def client(db):
    from callflow.main import app

    return TestClient(app)


@pytest.fixture
def lead(db):
    return db.insert_lead({"user_id": "U1", "first_name": "Dana", "phone_number": "+15551230000"})


@pytest.fixture
def make_workflow(db):
    """Build a workflow from (step_type, step_config) pairs and put the lead on one of its steps."""

    def _make(lead_id, steps=(("call", {}), ("wait", {"delay_minutes": 30}), ("sms", {})), current=0, workflow_id="W1"):
        rows = [
            db.insert_workflow_step({
                "workflow_id": workflow_id,
                "step_number": i + 1,
                "step_type": step_type,
                "step_config": config,
            })
            for i, (step_type, config) in enumerate(steps)
        ]
        progress = db.insert_workflow_progress({
            "lead_id": lead_id,
            "workflow_id": workflow_id,
            "current_step_id": rows[current]["id"],
        })
        return progress, rows

    return _make


@pytest.fixture
def call_payload():
    """Factory for provider webhook bodies."""

    def _make(event="call_ended", duration=45, metadata=None, **call_fields):
        call = {
            "call_id": "call_abc123",
            "call_status": "ended",
            "start_timestamp": START_MS,
            "end_timestamp": START_MS + duration * 1000,
            "from_number": "+15550001111",
            "to_number": "+15551230000",
            "metadata": {"user_id": "U1"} if metadata is None else metadata,
        }
        call.update(call_fields)
        return {"event": event, "call": call}

    return _make
