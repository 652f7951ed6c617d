"""Tests for call outcome classification."""

from __future__ import annotations

import pytest

from callflow.schemas.pydantic_schemas import CallAnalysis
from callflow.services.outcome_classifier import (
    DISPOSITIONS,
    DispositionResult,
    classify_analysis,
    classify_call,
    map_call_status,
    merge_outcomes,
    normalize_disposition,
)


class TestStatusMapping:
    """Provider status / disconnect reason table."""

    @pytest.mark.parametrize("status,reason", [
        ("ended", "machine_detected"),
        ("ended", None),
        ("error", None),
        ("ongoing", "dial_busy"),
    ])
    @pytest.mark.parametrize("duration", [0, 5, 9])
    def test_short_calls_are_no_answer(self, status, reason, duration):
        assert map_call_status(status, reason, duration) == "no_answer"

    @pytest.mark.parametrize("status,reason,expected", [
        ("ended", "machine_detected", "voicemail"),
        ("ended", "dial_no_answer", "no_answer"),
        ("ended", "dial_busy", "busy"),
        ("ended", "dial_failed", "failed"),
        ("ended", None, "completed"),
        ("ended", "user_hangup", "completed"),
        ("error", None, "failed"),
        ("registered", None, "unknown"),
        (None, None, "unknown"),
    ])
    def test_status_table(self, status, reason, expected):
        assert map_call_status(status, reason, 45) == expected

    def test_unknown_duration_does_not_force_no_answer(self):
        assert map_call_status("ended", "machine_detected", None) == "voicemail"

    def test_exactly_ten_seconds_is_not_short(self):
        assert map_call_status("ended", None, 10) == "completed"


class TestAnalysisMapping:
    """Structured post-call analysis rules."""

    def test_appointment_set_is_high_confidence(self):
        result = classify_analysis({"custom_analysis_data": {"appointment_set": True}, "call_summary": "Booked Tue"})
        assert result == DispositionResult("appointment_set", 0.95, "Booked Tue")

    def test_booked_alias(self):
        assert classify_analysis({"custom_analysis_data": {"booked": True}}).disposition == "appointment_set"

    def test_explicit_disposition_wins(self):
        result = classify_analysis({"custom_analysis_data": {"disposition": "Callback", "appointment_set": True}})
        assert result.disposition == "callback_requested"
        assert result.confidence == 0.9

    def test_unrecognised_explicit_disposition_is_ignored(self):
        result = classify_analysis({"custom_analysis_data": {"disposition": "maybe later-ish"}})
        assert result.disposition == "contacted"

    @pytest.mark.parametrize("key,expected,confidence", [
        ("callback_requested", "callback_requested", 0.85),
        ("call_back", "callback_requested", 0.85),
        ("dnc", "dnc", 0.95),
        ("do_not_call", "dnc", 0.95),
        ("not_interested", "not_interested", 0.8),
    ])
    def test_custom_flags(self, key, expected, confidence):
        result = classify_analysis({"custom_analysis_data": {key: True}})
        assert (result.disposition, result.confidence) == (expected, confidence)

    def test_negative_sentiment(self):
        assert classify_analysis({"user_sentiment": "Negative"}).disposition == "not_interested"

    def test_successful_and_positive_is_interested(self):
        result = classify_analysis({"user_sentiment": "Positive", "call_successful": True})
        assert (result.disposition, result.confidence) == ("interested", 0.7)

    def test_positive_without_success_is_contacted(self):
        result = classify_analysis({"user_sentiment": "Positive", "call_successful": False})
        assert (result.disposition, result.confidence) == ("contacted", 0.5)

    def test_callback_phrase_in_transcript(self):
        result = classify_analysis({"user_sentiment": "Neutral"}, "Lead: it's not a good time, call me back later")
        assert result.disposition == "callback_requested"

    def test_accepts_pydantic_model(self):
        analysis = CallAnalysis(user_sentiment="positive", call_successful=True, custom_analysis_data=None)
        assert classify_analysis(analysis).disposition == "interested"


class TestCombinedClassification:
    """Priority order across duration, analysis and status."""

    def test_short_duration_beats_analysis(self):
        analysis = {"custom_analysis_data": {"appointment_set": True}}
        assert classify_call("ended", "machine_detected", 5, analysis).disposition == "no_answer"

    def test_analysis_beats_status(self):
        analysis = {"custom_analysis_data": {"appointment_set": True}}
        assert classify_call("ended", None, 120, analysis).disposition == "appointment_set"

    def test_contacted_analysis_keeps_non_connection_status(self):
        result = classify_call("ended", "machine_detected", 45, {"user_sentiment": "neutral"})
        assert result.disposition == "voicemail"

    def test_status_used_without_analysis(self):
        assert classify_call("ended", "dial_busy", 30).disposition == "busy"

    def test_merge_outcomes_keeps_stronger_intent(self):
        merged = merge_outcomes("voicemail", DispositionResult("callback_requested", 0.85))
        assert merged.disposition == "callback_requested"

    def test_results_stay_in_vocabulary(self):
        for analysis in ({}, {"user_sentiment": "negative"}, {"custom_analysis_data": {"disposition": "DNC"}}):
            assert classify_call("ended", None, 60, analysis).disposition in DISPOSITIONS

    @pytest.mark.parametrize("raw,expected", [
        ("Do Not Call", "dnc"),
        ("appointment-booked", "appointment_set"),
        ("INTERESTED", "interested"),
        ("", None),
        (42, None),
    ])
    def test_normalize_disposition(self, raw, expected):
        assert normalize_disposition(raw) == expected
