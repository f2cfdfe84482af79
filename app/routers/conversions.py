"""Manual conversion resend and run-log audit endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.schemas.conversion import ManualConversionRequest, ManualConversionResponse, RunLogSummary
from app.services.pipeline_service import ManualConversionError, run_manual_conversion
from app.services.run_log_service import list_run_logs

logger = get_logger("conversions")

router = APIRouter(tags=["conversions"])


@router.post("/conversions/manual", response_model=ManualConversionResponse)
def manual_conversion(request: ManualConversionRequest, db: Session = Depends(get_db)):
    """Resend the Purchase event of a logged run, optionally with a corrected value."""
    try:
        run_log, value, attempts = run_manual_conversion(
            db,
            run_id=request.run_id,
            tenant_id=request.tenant_id,
            value=request.value,
        )
    except ManualConversionError as exc:
        logger.info(
            "Manual conversion refused",
            extra={"context": {"run_id": str(request.run_id), "reason": exc.message}},
        )
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    success = bool(run_log.conversion_sent)
    return ManualConversionResponse(
        success=success,
        run_id=run_log.id,
        value=value,
        attempts=[attempt.to_log() for attempt in attempts],
        message="Conversion sent" if success else run_log.conversion_error,
    )


@router.get("/runs/{tenant_id}", response_model=list[RunLogSummary])
def list_runs(tenant_id: UUID, limit: int = Query(default=50, ge=1, le=500), db: Session = Depends(get_db)):
    rows = list_run_logs(db, tenant_id=tenant_id, limit=limit)
    return [
        RunLogSummary(
            id=row.id,
            contact_phone=row.contact_phone,
            media_kind=row.media_kind,
            is_payment_proof=row.is_payment_proof,
            confidence=row.confidence,
            extracted_value=row.extracted_value,
            fraud_check=row.fraud_check,
            already_labeled=row.already_labeled,
            label_applied=row.label_applied,
            campaign_id=row.campaign_id,
            conversion_sent=row.conversion_sent,
            error_message=row.error_message,
            created_at=row.created_at,
        )
        for row in rows
    ]
