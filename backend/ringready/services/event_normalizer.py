"""Flatten the webhook shapes seen from the voice platform into one event.

Handlers written over time disagreed on where the event kind, call id and agent
id live (header vs body, snake vs camel case, bare vs ``message`` envelope).
``normalize_event`` accepts the union of those conventions.
"""
import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

EVENT_KIND_HEADER = "x-vapi-webhook-type"

CALL_STARTED = "call.started"
CALL_ENDED = "call.ended"
CALL_TRANSCRIPTION = "call.transcription"
CALL_SUMMARY = "call.summary"
UNKNOWN = "unknown"

KNOWN_EVENT_KINDS = (CALL_STARTED, CALL_ENDED, CALL_TRANSCRIPTION, CALL_SUMMARY)

_SEPARATORS = re.compile(r"[\s._-]+")


class MissingCallIdError(ValueError):
    pass


@dataclass(frozen=True)
class NormalizedEvent:
    event_kind: str
    call_id: str
    agent_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    raw_event_kind: str = ""

    @property
    def is_known(self) -> bool:
        return self.event_kind in KNOWN_EVENT_KINDS


def _first_present(body: Mapping[str, Any], keys) -> Any:
    for key in keys:
        value = body.get(key)
        if value is not None and value != "":
            return value
    return None


def canonical_event_kind(raw: Any) -> str:
    """Map ``Call-Started`` / ``call_started`` / ``CALL.STARTED`` to ``call.started``."""
    if raw is None:
        return UNKNOWN
    text = _SEPARATORS.sub(".", str(raw).strip().lower()).strip(".")
    if not text:
        return UNKNOWN
    return text


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    # Starlette headers are already case-insensitive; plain dicts are not.
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, v in headers.items():
            if str(key).lower() == lowered:
                value = v
                break
    if value is None or str(value).strip() == "":
        return None
    return str(value)


def _unwrap(body: Mapping[str, Any]) -> Mapping[str, Any]:
    if _first_present(body, ("call_id", "callId", "id")) is not None:
        return body
    message = body.get("message")
    if isinstance(message, Mapping):
        return message
    return body


def _call_id(body: Mapping[str, Any]) -> Optional[str]:
    value = _first_present(body, ("call_id", "callId", "id"))
    if value is None:
        call = body.get("call")
        if isinstance(call, Mapping):
            value = _first_present(call, ("id", "call_id", "callId"))
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def coerce_duration(value: Any) -> Optional[int]:
    """Whole seconds, clamped at zero; None when the value is not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric duration {value!r}")
        return None
    return max(0, seconds)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Ignoring unparsable timestamp {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _payload_fields(body: Mapping[str, Any]) -> Dict[str, Any]:
    caller = _first_present(body, ("caller_id", "from", "callerId"))
    transcription = _first_present(body, ("transcription", "transcript"))
    summary = body.get("summary")
    return {
        "caller_id": str(caller) if caller is not None else None,
        "duration_seconds": coerce_duration(_first_present(body, ("duration_seconds", "duration", "durationSeconds"))),
        "transcription": str(transcription) if transcription is not None else None,
        "summary": str(summary) if summary not in (None, "") else None,
        "end_time": parse_timestamp(_first_present(body, ("end_time", "ended_at", "endedAt"))),
    }


def normalize_event(headers: Mapping[str, Any], body: Any) -> NormalizedEvent:
    if not isinstance(body, Mapping):
        raise MissingCallIdError("Webhook body must be a JSON object")
    body = _unwrap(body)

    raw_kind = _header(headers, EVENT_KIND_HEADER) or _first_present(body, ("event", "type"))
    call_id = _call_id(body)
    if not call_id:
        raise MissingCallIdError("Missing call_id in webhook payload")

    agent = _first_present(body, ("agent_id", "assistant_id", "workflow_id"))
    agent_id = str(agent) if agent is not None else None

    return NormalizedEvent(
        event_kind=canonical_event_kind(raw_kind),
        call_id=call_id,
        agent_id=agent_id,
        payload=_payload_fields(body),
        raw_event_kind=str(raw_kind) if raw_kind is not None else "",
    )
