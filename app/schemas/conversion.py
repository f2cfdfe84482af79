from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ManualConversionRequest(BaseModel):
    run_id: UUID
    tenant_id: UUID
    value: Optional[Decimal] = Field(default=None, ge=0)


class ManualConversionResponse(BaseModel):
    success: bool
    run_id: UUID
    value: Decimal
    attempts: list[dict[str, Any]] = []
    message: Optional[str] = None


class RunLogSummary(BaseModel):
    id: UUID
    contact_phone: str
    media_kind: Optional[str] = None
    is_payment_proof: bool
    confidence: Optional[int] = None
    extracted_value: Optional[Decimal] = None
    fraud_check: str
    already_labeled: bool
    label_applied: bool
    campaign_id: Optional[str] = None
    conversion_sent: bool
    error_message: Optional[str] = None
    created_at: Any = None
