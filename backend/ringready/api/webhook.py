from fastapi import APIRouter, Request, HTTPException
from typing import Set
from ..config import get_settings
from ..schemas.pydantic_schemas import WebhookResponse
from ..services.broadcast_hub import get_hub
from ..services.call_reconciler import get_reconciler
from ..services.event_normalizer import MissingCallIdError, NormalizedEvent, normalize_event
from ..services.tenant_resolver import AgentTenantResolver
import asyncio, hmac, json
import logging

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()

# Strong references to in-flight reconciliations; they outlive a timed-out reply
_pending: Set[asyncio.Task] = set()


def verify_secret(provided: str) -> bool:
    secret = get_settings().webhook_secret
    if not secret:
        return True  # allow in local dev
    return hmac.compare_digest(secret.encode(), (provided or "").encode())


async def process_event(event: NormalizedEvent) -> WebhookResponse:
    """Reconcile one event and fan it out. Failures become ``success: false``, never an exception."""
    settings = get_settings()
    tenant_id = AgentTenantResolver.from_settings(settings).resolve(event.agent_id)
    try:
        record = await get_reconciler().reconcile(
            event.event_kind, event.call_id, event.agent_id, tenant_id, event.payload
        )
    except Exception as e:
        logger.exception(f"Failed to reconcile {event.event_kind} for call {event.call_id}")
        return WebhookResponse(success=False, message=f"Error processing webhook: {e}")

    if record is None:
        if not event.is_known:
            return WebhookResponse(success=True, message=f"Unknown event type: {event.raw_event_kind or event.event_kind}", stored=False)
        return WebhookResponse(success=True, message=f"No data to store for {event.event_kind}", stored=False)

    try:
        delivered = await get_hub().publish(event.event_kind, record)
        logger.info(f"Broadcast {event.event_kind} for call {event.call_id} to {delivered} dashboard client(s)")
    except Exception:
        logger.exception(f"Broadcast of {event.event_kind} for call {event.call_id} failed")

    return WebhookResponse(success=True, message=f"Call {event.event_kind.split('.', 1)[-1]} event processed", stored=True)


@router.post("/vapi/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
@router.post("/vapi-webhook", response_model=WebhookResponse, response_model_exclude_none=True, include_in_schema=False)
async def vapi_webhook(request: Request):
    if not verify_secret(request.headers.get("x-vapi-secret", "")):
        logger.warning("Webhook secret verification failed")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    raw = await request.body()
    try:
        body = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Failed to parse webhook JSON: {str(e)}")
        raise HTTPException(status_code=400, detail="Malformed JSON")

    try:
        event = normalize_event(request.headers, body)
    except MissingCallIdError as e:
        logger.error(f"Rejecting webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Webhook event received: {event.event_kind} for call {event.call_id} (agent {event.agent_id})")

    # Shielded so a slow store only delays the reply, never aborts the write
    task = asyncio.create_task(process_event(event))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=get_settings().webhook_ack_timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Reconciliation of {event.event_kind} for call {event.call_id} still running; acknowledging")
        return WebhookResponse(success=True, message="Webhook accepted, processing continues")
