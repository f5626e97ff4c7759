from datetime import datetime, timezone

import pytest

from ringready.services.event_normalizer import (
    CALL_ENDED,
    CALL_STARTED,
    CALL_SUMMARY,
    CALL_TRANSCRIPTION,
    UNKNOWN,
    MissingCallIdError,
    canonical_event_kind,
    coerce_duration,
    normalize_event,
)


def test_header_takes_precedence_over_body_fields():
    event = normalize_event(
        {"X-Vapi-Webhook-Type": "Call.Started"},
        {"event": "call.ended", "type": "call.summary", "call_id": "c1"},
    )
    assert event.event_kind == CALL_STARTED
    assert event.call_id == "c1"


def test_event_field_then_type_field():
    assert normalize_event({}, {"event": "call.ended", "type": "call.summary", "id": "c1"}).event_kind == CALL_ENDED
    assert normalize_event({}, {"type": "call.summary", "id": "c1"}).event_kind == CALL_SUMMARY


def test_missing_kind_is_unknown():
    event = normalize_event({}, {"call_id": "c1"})
    assert event.event_kind == UNKNOWN
    assert not event.is_known


@pytest.mark.parametrize("raw", ["call.transcription", "CALL_TRANSCRIPTION", "call-transcription", " Call.Transcription "])
def test_kind_separators_and_case_are_ignored(raw):
    assert canonical_event_kind(raw) == CALL_TRANSCRIPTION


def test_call_id_resolution_order():
    assert normalize_event({}, {"call_id": "a", "callId": "b", "id": "c"}).call_id == "a"
    assert normalize_event({}, {"callId": "b", "id": "c"}).call_id == "b"
    assert normalize_event({}, {"id": 42}).call_id == "42"


@pytest.mark.parametrize("body", [{}, {"event": "call.started"}, {"call_id": ""}, [], "call.started"])
def test_missing_call_id_is_rejected(body):
    with pytest.raises(MissingCallIdError):
        normalize_event({}, body)


def test_agent_id_resolution_order_and_string_coercion():
    assert normalize_event({}, {"id": "c", "agent_id": "A", "assistant_id": "B", "workflow_id": "W"}).agent_id == "A"
    assert normalize_event({}, {"id": "c", "assistant_id": "B", "workflow_id": "W"}).agent_id == "B"
    assert normalize_event({}, {"id": "c", "workflow_id": 7}).agent_id == "7"
    assert normalize_event({}, {"id": "c"}).agent_id is None


def test_message_envelope_is_unwrapped():
    body = {
        "message": {
            "type": "call.ended",
            "call": {"id": "c-env"},
            "assistant_id": "asst-1",
            "duration": 61.7,
        }
    }
    event = normalize_event({}, body)
    assert event.event_kind == CALL_ENDED
    assert event.call_id == "c-env"
    assert event.agent_id == "asst-1"
    assert event.payload["duration_seconds"] == 61


def test_payload_field_variants():
    event = normalize_event(
        {},
        {
            "callId": "c9",
            "from": "+15550001111",
            "duration": "125",
            "transcript": "hello there",
            "summary": "short call",
            "endedAt": "2026-03-01T12:02:05Z",
        },
    )
    assert event.payload["caller_id"] == "+15550001111"
    assert event.payload["duration_seconds"] == 125
    assert event.payload["transcription"] == "hello there"
    assert event.payload["summary"] == "short call"
    assert event.payload["end_time"] == datetime(2026, 3, 1, 12, 2, 5, tzinfo=timezone.utc)


def test_absent_payload_fields_are_none():
    payload = normalize_event({}, {"call_id": "c1"}).payload
    assert payload == {
        "caller_id": None,
        "duration_seconds": None,
        "transcription": None,
        "summary": None,
        "end_time": None,
    }


@pytest.mark.parametrize("value,expected", [(None, None), ("abc", None), (True, None), (-5, 0), ("12.9", 12), (30, 30)])
def test_coerce_duration(value, expected):
    assert coerce_duration(value) == expected
