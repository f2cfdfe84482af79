from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import WhatsAppInstance
from app.schemas.webhook import PaymentProofWebhook, WebhookResponse
from app.services.alert_service import alert_critical
from app.services.pipeline_service import load_pipeline_config, run_payment_proof_pipeline
from app.services.pipeline_types import MEDIA_DOCUMENT, MEDIA_IMAGE, IncomingEvent
from app.services.run_log_service import RunRecord

logger = get_logger("webhook")

router = APIRouter()

MESSAGE_EVENTS = {"messages", "messages.upsert"}
PDF_MIME = "application/pdf"


async def _parse_payment_proof_request(request: Request) -> dict | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except ValueError as exc:
        raw = await request.body()
        if not raw or not raw.strip():
            logger.info("Webhook ping with empty body")
            return WebhookResponse(success=True, message="Empty payload")
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload format")
    return payload


def detect_media_kind(webhook: PaymentProofWebhook) -> tuple[Optional[str], Optional[str], Optional[str], Optional[str]]:
    """Return (media kind, mimetype, file name, caption); kind is None for unsupported messages."""
    data = webhook.data
    message = data.message if data else None
    if message is None:
        return None, None, None, None
    if message.imageMessage is not None:
        image = message.imageMessage
        return MEDIA_IMAGE, image.mimetype or "image/jpeg", None, image.caption
    if message.documentMessage is not None:
        document = message.documentMessage
        mimetype = (document.mimetype or "").split(";")[0].strip().lower()
        file_name = document.fileName or ""
        if mimetype == PDF_MIME or (not mimetype and file_name.lower().endswith(".pdf")):
            return MEDIA_DOCUMENT, PDF_MIME, document.fileName, document.caption
    return None, None, None, None


def phone_from_jid(remote_jid: str) -> str:
    return remote_jid.split("@")[0].split(":")[0]


def _build_response(record: RunRecord) -> WebhookResponse:
    classification = record.classification
    ignored = bool(record.error_message and record.error_message.startswith("ignored"))
    return WebhookResponse(
        success=True,
        message=record.error_message if ignored else "Processed",
        run_id=record.run_id,
        is_payment_proof=classification.is_payment_proof if classification else False,
        already_labeled=record.already_labeled,
        label_applied=record.label_applied,
        fraud_check=record.fraud_check,
        campaign_id=record.attribution.campaign_id if record.attribution else None,
        conversion_sent=record.conversion_sent,
        extracted_value=record.extracted_value,
        details={
            "charge_status": record.charge_status,
            "notification_status": record.notification_status,
            "automation_status": record.automation_status,
            "dispatch_attempts": len(record.dispatch_attempts),
            "stage_errors": record.stage_errors,
            "error_message": None if ignored else record.error_message,
        },
    )


async def _handle_payment_proof(request: Request, db: Session, instance_name: Optional[str]) -> WebhookResponse:
    parsed = await _parse_payment_proof_request(request)
    if isinstance(parsed, WebhookResponse):
        return parsed

    # non-message events carry other shapes under "data"
    event = parsed.get("event")
    if str(event or "").strip().lower() not in MESSAGE_EVENTS:
        return WebhookResponse(success=True, message=f"Ignored event '{event}'")

    try:
        webhook = PaymentProofWebhook.model_validate(parsed)
    except ValidationError as exc:
        logger.warning("Webhook payload failed validation", extra={"context": {"error": str(exc)[:500]}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload format")

    key = webhook.data.key if webhook.data else None
    if key is None or not key.remoteJid or not key.id:
        return WebhookResponse(success=True, message="Ignored: no message key")
    if key.fromMe:
        return WebhookResponse(success=True, message="Ignored: outgoing message")
    if key.remoteJid.endswith("@g.us"):
        return WebhookResponse(success=True, message="Ignored: group message")

    media_kind, mimetype, file_name, caption = detect_media_kind(webhook)
    if media_kind is None:
        return WebhookResponse(success=True, message="Ignored: not an image or PDF")

    instance_name = instance_name or webhook.instanceName
    if not instance_name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing instance name")
    instance = db.query(WhatsAppInstance).filter(WhatsAppInstance.instance_name == instance_name).first()
    if instance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Instance '{instance_name}' not found")

    config = load_pipeline_config(db, instance)
    if config is None:
        return WebhookResponse(success=True, message="Ignored: pipeline not active for instance")

    if not settings.openai_api_key:
        logger.error("Model credentials missing", extra={"context": {"instance_name": instance_name}})
        alert_critical("OPENAI_API_KEY is not configured", {"instance_name": instance_name})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Model credentials not configured")

    event = IncomingEvent(
        tenant_id=instance.tenant_id,
        instance_id=instance.id,
        message_id=key.id,
        sender_phone=phone_from_jid(key.remoteJid),
        media_kind=media_kind,
        outgoing=key.fromMe,
        mimetype=mimetype,
        file_name=file_name,
        caption=caption,
        push_name=webhook.data.pushName if webhook.data else None,
    )
    logger.info(
        "Payment proof candidate received",
        extra={
            "context": {
                "instance_name": instance_name,
                "tenant_id": str(instance.tenant_id),
                "phone": event.sender_phone,
                "media_kind": media_kind,
            }
        },
    )

    record = await run_in_threadpool(run_payment_proof_pipeline, db, event, config)
    return _build_response(record)


@router.post("/webhook/payment-proof", response_model=WebhookResponse)
async def handle_payment_proof(request: Request, db: Session = Depends(get_db)):
    """Inbound gateway webhook; the instance is taken from the payload."""
    return await _handle_payment_proof(request, db, instance_name=None)


@router.post("/webhook/payment-proof/{instance_name}", response_model=WebhookResponse)
async def handle_payment_proof_for_instance(instance_name: str, request: Request, db: Session = Depends(get_db)):
    return await _handle_payment_proof(request, db, instance_name=instance_name)
