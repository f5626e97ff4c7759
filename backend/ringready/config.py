import os
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def parse_agent_tenant_map(raw: Optional[str]) -> Dict[str, int]:
    """Parse AGENT_TENANT_MAP, a JSON object of agent id -> tenant id.

    Bad input is logged and yields an empty mapping so the service still boots
    with every call routed to the default tenant.
    """
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error(f"AGENT_TENANT_MAP is not valid JSON: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error("AGENT_TENANT_MAP must be a JSON object")
        return {}
    mapping: Dict[str, int] = {}
    for agent_id, tenant_id in data.items():
        try:
            mapping[str(agent_id)] = int(tenant_id)
        except (TypeError, ValueError):
            logger.warning(f"Skipping agent {agent_id}: tenant id {tenant_id!r} is not an integer")
    return mapping


@dataclass(frozen=True)
class Settings:
    agent_tenant_map: Dict[str, int] = field(default_factory=dict)
    default_tenant_id: int = 1
    recent_calls_limit: int = 10
    fallback_call_seconds: int = 60
    transcription_backdate_seconds: int = 30
    broadcast_queue_size: int = 100
    webhook_ack_timeout: float = 5.0
    webhook_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        secret = os.getenv("VAPI_WEBHOOK_SECRET")
        return cls(
            agent_tenant_map=parse_agent_tenant_map(os.getenv("AGENT_TENANT_MAP")),
            default_tenant_id=_int_env("DEFAULT_TENANT_ID", 1),
            recent_calls_limit=_int_env("RECENT_CALLS_LIMIT", 10),
            fallback_call_seconds=max(0, _int_env("FALLBACK_CALL_SECONDS", 60)),
            transcription_backdate_seconds=max(0, _int_env("TRANSCRIPTION_BACKDATE_SECONDS", 30)),
            broadcast_queue_size=max(1, _int_env("BROADCAST_QUEUE_SIZE", 100)),
            webhook_ack_timeout=_float_env("WEBHOOK_ACK_TIMEOUT", 5.0),
            webhook_secret=secret.strip() if secret and secret.strip() else None,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()
    settings = Settings.from_env()
    logger.info(
        f"Settings loaded: {len(settings.agent_tenant_map)} agent mapping(s), "
        f"default tenant {settings.default_tenant_id}"
    )
    return settings
