"""Payment-proof pipeline: one inbound attachment, top to bottom.

media -> classify -> recipient check -> idempotency -> label -> charge
-> attribution -> lead -> conversion dispatch -> notification / automation

Every invocation writes exactly one ``pipeline_run_logs`` row, whatever
happened in between.
"""

import uuid
from decimal import Decimal
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import bind_run_logger, get_logger
from app.models import Contact, PipelineRunLog, TagConfig, WhatsAppInstance
from app.services import (
    attribution_service,
    automation_service,
    charge_service,
    conversion_service,
    idempotency_service,
    lead_service,
    notification_service,
    proof_classifier,
    recipient_verifier,
)
from app.services.alert_service import alert_critical
from app.services.gateway_service import ChatGateway, GatewayError
from app.services.label_service import LabelCache, apply_paid_label
from app.services.llm import LLMProvider
from app.services.pipeline_types import (
    FRAUD_MISMATCH,
    AttributionMatch,
    DispatchAttempt,
    IncomingEvent,
    PipelineConfig,
    PipelineDeadline,
)
from app.services.run_log_service import RunRecord, get_run_log, write_run_log

logger = get_logger("pipeline_service")

DEADLINE_EXCEEDED = "deadline_exceeded"


def load_pipeline_config(db: Session, instance: WhatsAppInstance) -> Optional[PipelineConfig]:
    """Active tag config of the instance as an immutable PipelineConfig."""
    row = (
        db.query(TagConfig)
        .filter(TagConfig.instance_id == instance.id, TagConfig.is_active.is_(True))
        .first()
    )
    if row is None:
        return None
    return PipelineConfig(
        tenant_id=instance.tenant_id,
        instance_id=instance.id,
        config_id=row.id,
        accept_images=row.filter_images,
        accept_documents=row.filter_pdfs,
        confidence_threshold=row.confidence_threshold or settings.default_confidence_threshold,
        label_name=row.label_name or "Pago",
        gateway_base_url=instance.gateway_base_url or settings.gateway_base_url,
        gateway_token=instance.gateway_token,
        currency=row.currency or "BRL",
        charge_enabled=row.charge_enabled,
        charge_amount=row.charge_amount,
        charge_pix_key=row.charge_pix_key,
        charge_pix_key_type=row.charge_pix_key_type,
        charge_payee_name=row.charge_payee_name,
        charge_message=row.charge_message,
        notifications_enabled=row.notifications_enabled,
        redact_value=row.redact_value,
        pause_other_flows=row.pause_other_flows,
    )


class PaymentProofPipeline:
    """Drives the stages for a single event. Not shared between requests."""

    def __init__(
        self,
        db: Session,
        event: IncomingEvent,
        config: PipelineConfig,
        *,
        gateway: Optional[ChatGateway] = None,
        llm: Optional[LLMProvider] = None,
        graph_client: Optional[conversion_service.GraphAPIClient] = None,
        deadline: Optional[PipelineDeadline] = None,
    ):
        self.db = db
        self.event = event
        self.config = config
        self.gateway = gateway or ChatGateway(
            config.gateway_base_url or settings.gateway_base_url,
            config.gateway_token or "",
            timeout_seconds=settings.http_timeout_seconds,
        )
        self.llm = llm
        self.graph_client = graph_client
        self.deadline = deadline or PipelineDeadline(settings.pipeline_deadline_seconds)
        self.record = RunRecord(
            run_id=uuid.uuid4(),
            tenant_id=config.tenant_id,
            instance_id=config.instance_id,
            phone=event.sender_phone,
            config_id=config.config_id,
            message_id=event.message_id,
            media_kind=event.media_kind,
        )
        self.log = bind_run_logger(
            logger,
            run_id=str(self.record.run_id),
            tenant_id=str(config.tenant_id),
            instance_id=str(config.instance_id),
            phone=event.sender_phone,
        )
        self.contact: Optional[Contact] = None
        self._claimed = False

    def _deadline_ok(self, stage: str) -> bool:
        if self.deadline.expired():
            self.record.record_stage_error(stage, DEADLINE_EXCEEDED)
            self.log.warning("Deadline exceeded, stage skipped", context={"stage": stage})
            return False
        return True

    def _stage_failed(self, stage: str, error: str, *, rollback: bool = False) -> None:
        self.record.record_stage_error(stage, error)
        if rollback:
            self.db.rollback()

    def run(self) -> RunRecord:
        try:
            self._run_stages()
        except Exception as exc:
            self.db.rollback()
            self.record.error_message = f"Pipeline crashed: {exc}"
            self.log.exception("Pipeline crashed")
            alert_critical(
                "Payment-proof pipeline crashed",
                {"run_id": str(self.record.run_id), "tenant_id": str(self.config.tenant_id), "error": str(exc)},
            )
            if self._claimed and not self.record.label_applied:
                self._release_claim_after_crash()
        write_run_log(self.db, self.record, self.deadline.elapsed_ms())
        return self.record

    def _run_stages(self) -> None:
        event = self.event
        if not self.config.accepts(event.media_kind):
            self.record.error_message = f"ignored: {event.media_kind} attachments disabled"
            self.log.info("Media kind filtered by tenant config", context={"media_kind": event.media_kind})
            return

        media = self._download_media()
        if media is None:
            return
        media_bytes, mime_type = media

        if not self._classify(media_bytes, mime_type):
            return
        if not self._verify_recipient():
            return
        if not self._claim_contact():
            return

        self._apply_label()
        if self.record.label_applied:
            self._send_charge()

        self.contact = lead_service.find_contact(
            self.db, tenant_id=self.config.tenant_id, instance_id=self.config.instance_id, phone=event.sender_phone
        )
        self._attribute()
        self._upsert_lead()

        if not self.record.label_applied:
            # claim was released; a later proof performs the non-idempotent side effects
            self.log.info("Label not applied, skipping dispatch and notifications")
            return

        self._dispatch_conversions()
        self._notify()
        self._trigger_automation()

    def _download_media(self) -> Optional[tuple[bytes, str]]:
        if not self._deadline_ok("media"):
            return None
        try:
            media_bytes, mime_type = self.gateway.download_media(self.event.message_id)
        except httpx.TimeoutException as exc:
            self._stage_failed("media", f"timeout: {exc}")
            self.log.warning("Media download timed out")
            return None
        except (GatewayError, httpx.HTTPError) as exc:
            self._stage_failed("media", str(exc))
            self.log.error("Media download failed", context={"error": str(exc)})
            return None
        if self.event.mimetype and mime_type == "application/octet-stream":
            mime_type = self.event.mimetype
        return media_bytes, mime_type

    def _classify(self, media_bytes: bytes, mime_type: str) -> bool:
        if not self._deadline_ok("classify"):
            return False
        result = proof_classifier.classify_media(
            media_bytes,
            mime_type,
            self.event.media_kind,
            self.config,
            file_name=self.event.file_name,
            llm=self.llm,
            timeout_seconds=min(settings.model_timeout_seconds, max(self.deadline.remaining(), 1.0)),
        )
        if result.skipped:
            self.record.error_message = f"ignored: {result.error}"
            return False
        if not result.ok:
            self._stage_failed("classify", result.error or "classification failed")
            return False

        classification = result.value
        self.record.classification = classification
        actionable = classification.is_actionable(self.config.confidence_threshold)
        self.log.info(
            "Classification done",
            context={
                "is_payment_proof": classification.is_payment_proof,
                "confidence": classification.confidence,
                "amount": classification.amount,
                "value_source": classification.value_source,
                "actionable": actionable,
            },
        )
        return actionable

    def _verify_recipient(self) -> bool:
        verdict = recipient_verifier.check_recipient(self.db, self.config.tenant_id, self.record.classification)
        self.record.fraud_check = verdict
        if verdict == FRAUD_MISMATCH:
            self.record.error_message = "Recipient does not match any registered payee"
            self.log.warning("Fraud check failed, aborting run")
            return False
        return True

    def _claim_contact(self) -> bool:
        keys = {
            "tenant_id": self.config.tenant_id,
            "instance_id": self.config.instance_id,
            "phone": self.event.sender_phone,
        }
        if idempotency_service.was_already_labeled(self.db, **keys):
            self.record.already_labeled = True
            self.log.info("Contact already labeled as paid, skipping side effects")
            return False
        if not idempotency_service.claim_paid_contact(self.db, run_id=self.record.run_id, **keys):
            self.record.already_labeled = True
            self.log.info("Contact claimed by a concurrent run, skipping side effects")
            return False
        self._claimed = True
        return True

    def _release_claim(self) -> None:
        self._claimed = False
        idempotency_service.release_paid_contact(
            self.db,
            tenant_id=self.config.tenant_id,
            instance_id=self.config.instance_id,
            phone=self.event.sender_phone,
            run_id=self.record.run_id,
        )

    def _release_claim_after_crash(self) -> None:
        try:
            self._release_claim()
        except Exception:
            self.db.rollback()
            self.log.exception("Could not release paid-contact claim after crash")

    def _apply_label(self) -> None:
        if not self._deadline_ok("label"):
            self.record.label_error = DEADLINE_EXCEEDED
            self._release_claim()
            return
        cache = LabelCache(
            self.db,
            self.gateway,
            tenant_id=self.config.tenant_id,
            instance_id=self.config.instance_id,
            label_name=self.config.label_name,
        )
        result = apply_paid_label(cache, self.event.sender_phone)
        if result.ok:
            self.record.label_applied = True
            self.log.info("Paid label applied", context={"label_id": result.value})
            return
        self.record.label_error = result.error
        self._stage_failed("label", f"{result.error_code}: {result.error}")
        self._release_claim()

    def _send_charge(self) -> None:
        if not self.config.charge_enabled:
            return
        if not self._deadline_ok("charge"):
            self.record.charge_status = f"failed:{DEADLINE_EXCEEDED}"
            return
        result = charge_service.send_charge(self.gateway, self.config, self.event.sender_phone)
        self.record.charge_status = result.status
        if not result.ok and not result.skipped:
            self._stage_failed("charge", result.error or "charge failed")

    @property
    def ctwa_clid(self) -> Optional[str]:
        return self.contact.ctwa_clid if self.contact else None

    def _attribute(self) -> None:
        self.record.ctwa_clid = self.ctwa_clid
        if not self._deadline_ok("attribution"):
            return
        try:
            self.record.attribution = attribution_service.resolve_attribution(
                self.db,
                tenant_id=self.config.tenant_id,
                phone=self.event.sender_phone,
                source_url=self.contact.source_url if self.contact else None,
                ctwa_clid=self.ctwa_clid,
                timeout_seconds=min(settings.http_timeout_seconds, max(self.deadline.remaining(), 1.0)),
            )
        except Exception as exc:
            self._stage_failed("attribution", str(exc), rollback=True)
            self.log.exception("Attribution failed")

    def _upsert_lead(self) -> None:
        attribution = self.record.attribution or AttributionMatch()
        try:
            lead_service.upsert_lead(
                self.db,
                tenant_id=self.config.tenant_id,
                instance_id=self.config.instance_id,
                phone=self.event.sender_phone,
                value=self.record.extracted_value,
                attribution=attribution,
                ctwa_clid=self.ctwa_clid,
                fbclid=self.contact.fbclid if self.contact else None,
                source_url=self.contact.source_url if self.contact else None,
            )
        except Exception as exc:
            self._stage_failed("lead", str(exc), rollback=True)
            self.log.exception("Lead upsert failed")

    def _dispatch_conversions(self) -> None:
        if not self._deadline_ok("dispatch"):
            return
        request = conversion_service.ConversionRequest(
            tenant_id=self.config.tenant_id,
            phone=self.event.sender_phone,
            value=self.record.extracted_value,
            currency=self.config.currency,
            event_id=f"tagpix_{self.record.run_id}",
            ctwa_clid=self.ctwa_clid,
            fbclid=self.contact.fbclid if self.contact else None,
        )
        attempts: list[DispatchAttempt] = []
        try:
            attempts.extend(conversion_service.report_to_all(self.db, request, client=self.graph_client))
            if self._deadline_ok("dispatch_first_success"):
                attempts.extend(conversion_service.first_success(self.db, request, client=self.graph_client))
        except Exception as exc:
            self._stage_failed("dispatch", str(exc), rollback=True)
            self.log.exception("Conversion dispatch failed")
        self.record.dispatch_attempts = attempts
        self.log.info(
            "Conversion dispatch finished",
            context={"attempts": len(attempts), "conversion_sent": self.record.conversion_sent},
        )

    def _notify(self) -> None:
        name = (self.contact.name if self.contact else None) or self.event.push_name
        try:
            result = notification_service.enqueue_sale_notification(
                self.db,
                self.config,
                phone=self.event.sender_phone,
                name=name,
                value=self.record.extracted_value,
                run_id=self.record.run_id,
            )
            self.record.notification_status = result.status
        except Exception as exc:
            self.record.notification_status = "failed:error"
            self._stage_failed("notification", str(exc), rollback=True)
            self.log.exception("Notification enqueue failed")

    def _trigger_automation(self) -> None:
        try:
            result = automation_service.trigger_sale_flows(self.db, self.config, self.contact)
            self.record.automation_status = result.status
        except Exception as exc:
            self.record.automation_status = "failed:error"
            self._stage_failed("automation", str(exc), rollback=True)
            self.log.exception("Sale flow trigger failed")


def run_payment_proof_pipeline(
    db: Session,
    event: IncomingEvent,
    config: PipelineConfig,
    **collaborators,
) -> RunRecord:
    return PaymentProofPipeline(db, event, config, **collaborators).run()


class ManualConversionError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def run_manual_conversion(
    db: Session,
    *,
    run_id: UUID,
    tenant_id: UUID,
    value: Optional[Decimal] = None,
    graph_client: Optional[conversion_service.GraphAPIClient] = None,
) -> tuple[PipelineRunLog, Decimal, list[DispatchAttempt]]:
    """Resend the Purchase for a logged run through the report-to-all path."""
    run_log = get_run_log(db, run_id=run_id, tenant_id=tenant_id)
    if run_log is None:
        raise ManualConversionError("Run log not found", status_code=404)
    if run_log.conversion_sent:
        raise ManualConversionError("Conversion already sent for this run")

    purchase_value = value if value is not None else (run_log.extracted_value or Decimal("0"))
    contact = lead_service.find_contact(
        db, tenant_id=tenant_id, instance_id=run_log.instance_id, phone=run_log.contact_phone
    )
    config_row = db.query(TagConfig).filter(TagConfig.id == run_log.config_id).first() if run_log.config_id else None
    request = conversion_service.ConversionRequest(
        tenant_id=tenant_id,
        phone=run_log.contact_phone,
        value=purchase_value,
        currency=(config_row.currency if config_row else None) or "BRL",
        event_id=f"tagpix_manual_{run_log.id}",
        ctwa_clid=(contact.ctwa_clid if contact else None) or run_log.ctwa_clid,
        fbclid=contact.fbclid if contact else None,
    )
    attempts = conversion_service.report_to_all(db, request, client=graph_client)
    if not attempts:
        raise ManualConversionError("No ad account with conversions enabled")

    succeeded = [attempt for attempt in attempts if attempt.success]
    run_log.dispatch_attempts = list(run_log.dispatch_attempts or []) + [attempt.to_log() for attempt in attempts]
    if succeeded:
        run_log.conversion_sent = True
        run_log.conversion_error = None
        run_log.conversion_pixel_id = succeeded[0].target_id
        run_log.extracted_value = purchase_value
    else:
        run_log.conversion_error = "; ".join(a.error_message for a in attempts if a.error_message)[:1000] or None
    db.commit()

    logger.info(
        "Manual conversion dispatched",
        extra={
            "context": {
                "run_id": str(run_id),
                "tenant_id": str(tenant_id),
                "value": purchase_value,
                "succeeded": len(succeeded),
            }
        },
    )
    return run_log, purchase_value, attempts
