import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from spin_agent.config import settings
from spin_agent.database import get_db
from spin_agent.logging_config import create_correlation_id, get_logger
from spin_agent.models import WhatsAppAccount
from spin_agent.schemas.webhook import WebhookEvent, WebhookResponse
from spin_agent.services.alert_service import alert_error
from spin_agent.services.batch_service import BatchCoalescer
from spin_agent.services.dedup_service import IdempotencyGuard
from spin_agent.services.errors import StoreUnavailableError, WebhookAuthError
from spin_agent.services.ingest_service import InboundMessage, build_inbound_message_id, ingest_message
from spin_agent.services.whatsapp_service import normalize_jid
from spin_agent.wiring import get_coalescer, get_guard

logger = get_logger("webhook")

router = APIRouter()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """``x-signature: sha256=<hex>`` HMAC of the raw body."""
    if not signature:
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def authenticate_account(db: Session, instance_id: str, token: str) -> WhatsAppAccount:
    account = (
        db.query(WhatsAppAccount)
        .filter(WhatsAppAccount.instance_id == instance_id, WhatsAppAccount.is_active.is_(True))
        .first()
    )
    if account is None:
        raise WebhookAuthError(f"Unknown instance: {instance_id}", status_code=404)
    if not hmac.compare_digest(account.webhook_token or "", token):
        raise WebhookAuthError("Invalid webhook token", status_code=403)
    return account


@router.get("/webhook/whatsapp")
async def webhook_health():
    return {
        "status": "ok",
        "service": "whatsapp-webhook",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
async def handle_whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    guard: IdempotencyGuard = Depends(get_guard),
    coalescer: BatchCoalescer = Depends(get_coalescer),
    x_instance_id: Optional[str] = Header(default=None),
    x_webhook_token: Optional[str] = Header(default=None),
    x_signature: Optional[str] = Header(default=None),
):
    """Evolution API webhook. Accepts inbound messages into the batching pipeline."""
    correlation_id = create_correlation_id()
    instance_id = x_instance_id or request.query_params.get("instance")
    token = x_webhook_token or request.query_params.get("token")
    context = {"correlation_id": correlation_id, "instance_id": instance_id}

    if not instance_id or not token:
        raise HTTPException(status_code=400, detail="Missing instance id or webhook token")

    raw_body = await request.body()
    if settings.webhook_secret and not verify_signature(raw_body, x_signature, settings.webhook_secret):
        logger.warning("Invalid webhook signature", extra={"context": context})
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = WebhookEvent.model_validate(json.loads(raw_body))
    except (ValueError, ValidationError) as e:
        logger.warning("Invalid webhook payload", extra={"context": {**context, "error": str(e)[:200]}})
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        account = authenticate_account(db, instance_id, token)
    except WebhookAuthError as e:
        logger.warning(str(e), extra={"context": context})
        raise HTTPException(status_code=e.status_code, detail=str(e))

    if not event.is_message_received:
        return WebhookResponse(success=True, correlation_id=correlation_id, ignored=f"event:{event.event}")

    try:
        data = event.message_data()
    except ValidationError as e:
        logger.warning("Invalid message data", extra={"context": {**context, "error": str(e)[:200]}})
        raise HTTPException(status_code=400, detail="Invalid message data")

    if data.key.from_me:
        return WebhookResponse(success=True, correlation_id=correlation_id, ignored="from_me")
    remote_jid = data.key.remote_jid or ""
    if remote_jid.endswith("@g.us"):
        return WebhookResponse(success=True, correlation_id=correlation_id, ignored="group")
    text = (data.text or "").strip()
    if not text or not remote_jid:
        return WebhookResponse(success=True, correlation_id=correlation_id, ignored="no_text")

    message = InboundMessage(
        provider_message_id=build_inbound_message_id(data.key.id, remote_jid, data.message_timestamp, text),
        sender=normalize_jid(remote_jid),
        text=text,
        push_name=data.push_name,
        timestamp=data.message_timestamp,
    )

    try:
        result = await ingest_message(
            db,
            account=account,
            message=message,
            guard=guard,
            coalescer=coalescer,
            correlation_id=correlation_id,
        )
    except StoreUnavailableError as e:
        logger.error("State store unavailable, rejecting webhook", extra={"context": {**context, "error": str(e)}})
        await alert_error("State store unavailable", {**context, "error": str(e)[:200]})
        raise HTTPException(status_code=503, detail="State store unavailable")

    return WebhookResponse(
        success=True,
        correlation_id=correlation_id,
        duplicate=result.duplicate,
        session_id=result.session_id,
        batch_deadline=result.batch_deadline,
    )
