"""
WhatsApp Cloud API Webhook Handler

Receives messages and delivery receipts from Meta. Messages are parsed into
IncomingMessage and routed through the conversation state machine; status
callbacks update alert delivery state. Signature verification and
per-message idempotency (webhook_events) happen before any processing.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.timeutils import utcnow
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.db.database import get_db
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.alert_service import AlertService
from app.domain.services.whatsapp import get_whatsapp_provider
from app.state_machine.handlers import IncomingMessage
from app.state_machine.router import MessageRouter

logger = get_logger(__name__)

router = APIRouter()

PLATFORM = "whatsapp_cloud"

# A message stuck in processing longer than this may be retried
_STALE_PROCESSING_SECONDS = 120


# ──────────────────────────────────────────────
#  Verification and signatures
# ──────────────────────────────────────────────


@router.get(
    "",
    summary="Cloud API Webhook Verification",
    description="Meta webhook verification; echoes hub.challenge.",
    response_class=PlainTextResponse,
)
async def cloud_api_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> str:
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and hub_verify_token
        and settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
        and hmac.compare_digest(hub_verify_token, settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN)
    ):
        logger.info("Cloud API webhook verified successfully")
        return hub_challenge
    logger.warning("Cloud API webhook verification failed", extra_data={"hub_mode": hub_mode})
    raise HTTPException(status_code=403, detail="Verification failed")


def _verify_signature(body: bytes, signature_header: str) -> bool:
    """HMAC-SHA256 of the raw body with the app secret, as sent in X-Hub-Signature-256."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(
        settings.WHATSAPP_CLOUD_API_APP_SECRET.encode(),
        body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(signature_header[7:], expected)


# ──────────────────────────────────────────────
#  Idempotency
# ──────────────────────────────────────────────


async def _try_acquire_message(db: AsyncSession, message_id: str) -> bool:
    """
    Claim a message id for processing. False for completed duplicates and
    for ids another worker is still processing.
    """
    if not message_id:
        return True

    try:
        async with db.begin_nested():
            db.add(WebhookEvent(message_id=message_id, platform=PLATFORM, status="processing", created_at=utcnow()))
        # committed right away so a crash mid-processing still blocks instant redelivery
        await db.commit()
        return True
    except IntegrityError:
        pass

    result = await db.execute(
        select(WebhookEvent.status, WebhookEvent.created_at).where(WebhookEvent.message_id == message_id)
    )
    row = result.one_or_none()
    if row is None:
        return False
    if row.status == "completed":
        logger.info("Skipping completed duplicate message", extra_data={"message_id": message_id})
        return False

    threshold = utcnow() - timedelta(seconds=_STALE_PROCESSING_SECONDS)
    update_result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.message_id == message_id,
            WebhookEvent.status == "processing",
            WebhookEvent.created_at < threshold,
        )
        .values(created_at=utcnow())
    )
    if update_result.rowcount > 0:
        await db.commit()
        logger.warning("Retrying stale processing message", extra_data={"message_id": message_id})
        return True

    logger.info("Message already in processing, skipping", extra_data={"message_id": message_id})
    return False


async def _mark_message_completed(db: AsyncSession, message_id: str) -> None:
    if not message_id:
        return
    await db.execute(
        update(WebhookEvent).where(WebhookEvent.message_id == message_id).values(status="completed")
    )
    await db.commit()


# ──────────────────────────────────────────────
#  Payload parsing
# ──────────────────────────────────────────────


def parse_cloud_message(msg: dict, contacts: list[dict] | None = None) -> IncomingMessage | None:
    """Cloud API message object -> IncomingMessage. None for types we don't handle."""
    from_phone = msg.get("from", "")
    if not from_phone:
        return None

    phone = PhoneNumberValidator.normalize(from_phone)
    msg_type = msg.get("type", "")
    profile_name = None
    for contact in contacts or []:
        if contact.get("wa_id") == from_phone:
            profile_name = contact.get("profile", {}).get("name")

    incoming = IncomingMessage(
        phone=phone,
        message_id=msg.get("id") or None,
        type=msg_type,
        profile_name=profile_name,
    )

    if msg_type == "text":
        body = TextSanitizer.remove_control_characters(msg.get("text", {}).get("body", ""))
        incoming.text = TextSanitizer.sanitize(body)
    elif msg_type == "interactive":
        interactive = msg.get("interactive", {})
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        incoming.selection_id = reply.get("id")
        incoming.text = reply.get("title")
    elif msg_type == "button":
        incoming.type = "interactive"
        incoming.text = msg.get("button", {}).get("text")
        incoming.selection_id = msg.get("button", {}).get("payload") or incoming.text
    elif msg_type == "location":
        location = msg.get("location", {})
        incoming.latitude = location.get("latitude")
        incoming.longitude = location.get("longitude")
        incoming.location_name = location.get("name") or location.get("address")
    elif msg_type == "image":
        image = msg.get("image", {})
        incoming.media_id = image.get("id")
        incoming.text = image.get("caption")
    else:
        return None

    if not (incoming.content or incoming.has_location or incoming.media_id):
        return None
    return incoming


async def send_whatsapp_message(phone: str, text: str, keyboard: list[str] | None = None) -> None:
    """Fire-and-forget reply; failures are logged, not raised."""
    provider = get_whatsapp_provider()
    try:
        await provider.send_text(to=phone, text=text, buttons=keyboard)
    except Exception as exc:
        logger.error(
            "Failed to send WhatsApp reply",
            extra_data={"phone": PhoneNumberValidator.mask(phone), "error": str(exc)},
            exc_info=True,
        )


# ──────────────────────────────────────────────
#  Webhook handler
# ──────────────────────────────────────────────


@router.post(
    "",
    summary="Cloud API Webhook",
    description="Inbound messages and delivery receipts from the WhatsApp Cloud API.",
    responses={
        200: {"description": "Payload accepted"},
        403: {"description": "Invalid signature"},
    },
)
async def cloud_api_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256", "")

    if not settings.WHATSAPP_CLOUD_API_APP_SECRET:
        logger.error("Cloud API webhook: WHATSAPP_CLOUD_API_APP_SECRET not set, rejecting")
        raise HTTPException(status_code=403, detail="Signature cannot be verified")
    if not _verify_signature(body, signature):
        logger.warning("Cloud API webhook: invalid signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    processed = 0
    statuses = 0

    # entry[] -> changes[] -> value.messages[] / value.statuses[]
    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            if value.get("messaging_product") != "whatsapp":
                continue

            for msg in value.get("messages", []):
                if await _process_cloud_message(db, msg, value.get("contacts", []), background_tasks):
                    processed += 1

            for status_update in value.get("statuses", []):
                statuses += await _process_status(db, status_update)

    return {"status": "ok", "processed": processed, "statuses": statuses}


async def _process_cloud_message(
    db: AsyncSession,
    msg: dict,
    contacts: list[dict],
    background_tasks: BackgroundTasks,
) -> bool:
    incoming = parse_cloud_message(msg, contacts)
    if incoming is None:
        return False

    phone_masked = PhoneNumberValidator.mask(incoming.phone)
    logger.debug(
        "Cloud API message received",
        extra_data={"from": phone_masked, "message_id": incoming.message_id, "type": incoming.type},
    )

    if not await _try_acquire_message(db, incoming.message_id):
        return False

    try:
        response = await MessageRouter(db).route(incoming)
    except Exception as exc:
        # left in processing so Meta's redelivery can retry after the stale window
        await db.rollback()
        logger.error(
            "Cloud API message processing failed",
            extra_data={"message_id": incoming.message_id, "phone": phone_masked, "error": str(exc)},
            exc_info=True,
        )
        return False

    await _mark_message_completed(db, incoming.message_id)
    if response is not None:
        background_tasks.add_task(send_whatsapp_message, incoming.phone, response.text, response.keyboard)
    return True


async def _process_status(db: AsyncSession, status_update: dict) -> int:
    """Delivery receipt (sent / delivered / read / failed) for an outbound message."""
    provider_message_id = status_update.get("id")
    status = status_update.get("status", "")
    errors = status_update.get("errors") or []
    error = None
    if errors:
        first = errors[0]
        error = f"{first.get('code')}: {first.get('title') or first.get('message')}"

    try:
        changed = await AlertService(db).handle_status_callback(provider_message_id, status, error)
        await db.commit()
    except Exception as exc:
        await db.rollback()
        logger.error(
            "Status callback processing failed",
            extra_data={"provider_message_id": provider_message_id, "status": status, "error": str(exc)},
            exc_info=True,
        )
        return 0
    return changed
