from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import PipelineRunLog
from app.services.pipeline_types import (
    FRAUD_SKIPPED,
    AttributionMatch,
    ClassificationResult,
    DispatchAttempt,
)

logger = get_logger("run_log_service")


@dataclass
class RunRecord:
    """Accumulates stage outcomes; persisted once at the end of a run."""

    run_id: UUID
    tenant_id: UUID
    instance_id: UUID
    phone: str
    config_id: Optional[UUID] = None
    message_id: Optional[str] = None
    media_kind: Optional[str] = None
    classification: Optional[ClassificationResult] = None
    fraud_check: str = FRAUD_SKIPPED
    already_labeled: bool = False
    label_applied: bool = False
    label_error: Optional[str] = None
    charge_status: Optional[str] = None
    attribution: Optional[AttributionMatch] = None
    ctwa_clid: Optional[str] = None
    dispatch_attempts: list[DispatchAttempt] = field(default_factory=list)
    notification_status: Optional[str] = None
    automation_status: Optional[str] = None
    stage_errors: dict[str, str] = field(default_factory=dict)
    error_message: Optional[str] = None

    def record_stage_error(self, stage: str, error: str) -> None:
        self.stage_errors[stage] = error

    @property
    def extracted_value(self) -> Optional[Decimal]:
        return self.classification.amount if self.classification else None

    @property
    def conversion_sent(self) -> bool:
        return any(attempt.success for attempt in self.dispatch_attempts)

    @property
    def conversion_pixel_id(self) -> Optional[str]:
        for attempt in self.dispatch_attempts:
            if attempt.success:
                return attempt.target_id
        return None

    @property
    def conversion_error(self) -> Optional[str]:
        if not self.dispatch_attempts or self.conversion_sent:
            return None
        errors = [attempt.error_message for attempt in self.dispatch_attempts if attempt.error_message]
        return "; ".join(errors)[:1000] if errors else None

    def to_row(self, duration_ms: int) -> dict[str, Any]:
        classification = self.classification
        return {
            "id": self.run_id,
            "tenant_id": self.tenant_id,
            "instance_id": self.instance_id,
            "config_id": self.config_id,
            "message_id": self.message_id,
            "contact_phone": self.phone,
            "media_kind": self.media_kind,
            "is_payment_proof": bool(classification and classification.is_payment_proof),
            "confidence": classification.confidence if classification else None,
            "extracted_value": self.extracted_value,
            "value_source": classification.value_source if classification else None,
            "classification": classification.to_log() if classification else None,
            "fraud_check": self.fraud_check,
            "already_labeled": self.already_labeled,
            "label_applied": self.label_applied,
            "label_error": self.label_error,
            "charge_status": self.charge_status,
            "attribution": self.attribution.to_log() if self.attribution else None,
            "campaign_id": self.attribution.campaign_id if self.attribution else None,
            "ctwa_clid": self.ctwa_clid,
            "dispatch_attempts": [attempt.to_log() for attempt in self.dispatch_attempts],
            "conversion_sent": self.conversion_sent,
            "conversion_pixel_id": self.conversion_pixel_id,
            "conversion_error": self.conversion_error,
            "notification_status": self.notification_status,
            "automation_status": self.automation_status,
            "stage_errors": dict(self.stage_errors),
            "error_message": self.error_message,
            "duration_ms": duration_ms,
        }


def write_run_log(db: Session, record: RunRecord, duration_ms: int) -> PipelineRunLog:
    row = PipelineRunLog(**record.to_row(duration_ms))
    db.add(row)
    db.commit()
    logger.info(
        "Run log written",
        extra={
            "context": {
                "run_id": str(record.run_id),
                "tenant_id": str(record.tenant_id),
                "phone": record.phone,
                "label_applied": record.label_applied,
                "conversion_sent": record.conversion_sent,
                "stage_errors": record.stage_errors,
                "duration_ms": duration_ms,
            }
        },
    )
    return row


def get_run_log(db: Session, *, run_id: UUID, tenant_id: UUID) -> Optional[PipelineRunLog]:
    return (
        db.query(PipelineRunLog)
        .filter(PipelineRunLog.id == run_id, PipelineRunLog.tenant_id == tenant_id)
        .first()
    )


def list_run_logs(db: Session, *, tenant_id: UUID, limit: int = 50) -> list[PipelineRunLog]:
    return (
        db.query(PipelineRunLog)
        .filter(PipelineRunLog.tenant_id == tenant_id)
        .order_by(PipelineRunLog.created_at.desc())
        .limit(limit)
        .all()
    )
