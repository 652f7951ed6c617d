"""Tests for lead state patches."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from callflow.services.lead_updater import apply_lead_update, build_call_note, build_lead_patch, lead_status_for

NOW = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


class TestLeadPatch:
    def test_dnc_sets_flag_and_status(self):
        patch = build_lead_patch("dnc", NOW)
        assert patch["do_not_call"] is True
        assert patch["status"] == "dnc"

    def test_callback_scheduled_24h_out(self):
        before = datetime.now(timezone.utc)
        patch = build_lead_patch("callback_requested")
        callback_at = datetime.fromisoformat(patch["next_callback_at"])
        assert before + timedelta(hours=24) <= callback_at <= before + timedelta(hours=24, seconds=1)
        assert patch["status"] == "callback"

    def test_voicemail_is_contacted_without_side_flags(self):
        patch = build_lead_patch("voicemail", NOW)
        assert patch["status"] == "contacted"
        assert "next_callback_at" not in patch
        assert "do_not_call" not in patch
        assert patch["last_contacted_at"] == NOW.isoformat()

    @pytest.mark.parametrize("disposition,status", [
        ("appointment_set", "qualified"),
        ("interested", "interested"),
        ("not_interested", "not_interested"),
        ("completed", "contacted"),
        ("no_answer", "contacted"),
    ])
    def test_status_table(self, disposition, status):
        assert lead_status_for(disposition) == status

    def test_notes_are_appended(self):
        patch = build_lead_patch("interested", NOW, existing_notes="older note", call_note="new note")
        assert patch["notes"] == "older note\n\nnew note"

    def test_call_note_contents(self):
        note = build_call_note("callback_requested", 125, "Wants pricing", NOW)
        assert "Outcome: Callback Requested" in note
        assert "Duration: 2m 5s" in note
        assert "Summary: Wants pricing" in note
        assert "Next: Callback scheduled" in note


class TestApplyLeadUpdate:
    def test_updates_lead_row(self, db, lead):
        apply_lead_update(db, lead["id"], "dnc", user_id="U1", duration_seconds=30, now=NOW)
        stored = db.get_lead(lead["id"])
        assert stored["status"] == "dnc"
        assert stored["do_not_call"] is True
        assert "Outcome: Dnc" in stored["notes"]
        assert db.scheduled_follow_ups == []

    def test_callback_records_follow_up(self, db, lead):
        patch = apply_lead_update(db, lead["id"], "callback_requested", user_id="U1", summary="Busy at work", now=NOW)
        assert db.get_lead(lead["id"])["next_callback_at"] == (NOW + timedelta(hours=24)).isoformat()
        [follow_up] = db.scheduled_follow_ups
        assert follow_up["scheduled_at"] == patch["next_callback_at"]
        assert follow_up["action_type"] == "callback"
        assert "Busy at work" in follow_up["notes"]

    def test_missing_lead_raises(self, db):
        with pytest.raises(LookupError):
            apply_lead_update(db, "nope", "contacted", now=NOW)
