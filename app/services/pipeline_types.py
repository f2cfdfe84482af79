import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

MEDIA_IMAGE = "image"
MEDIA_DOCUMENT = "document"

FRAUD_SKIPPED = "skipped"
FRAUD_PASSED = "passed"
FRAUD_MISMATCH = "mismatch"

PATH_REPORT_ALL = "report_all"
PATH_FIRST_SUCCESS = "first_success"


@dataclass(frozen=True)
class IncomingEvent:
    tenant_id: UUID
    instance_id: UUID
    message_id: str
    sender_phone: str
    media_kind: str
    outgoing: bool = False
    mimetype: Optional[str] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None
    push_name: Optional[str] = None


@dataclass(frozen=True)
class PipelineConfig:
    """Per-tenant policy resolved once per run and passed to every stage."""

    tenant_id: UUID
    instance_id: UUID
    config_id: Optional[UUID] = None
    accept_images: bool = True
    accept_documents: bool = True
    confidence_threshold: int = 70
    label_name: str = "Pago"
    gateway_base_url: str = ""
    gateway_token: Optional[str] = None
    currency: str = "BRL"
    charge_enabled: bool = False
    charge_amount: Optional[Decimal] = None
    charge_pix_key: Optional[str] = None
    charge_pix_key_type: Optional[str] = None
    charge_payee_name: Optional[str] = None
    charge_message: Optional[str] = None
    notifications_enabled: bool = True
    redact_value: bool = False
    pause_other_flows: bool = False

    def accepts(self, media_kind: str) -> bool:
        if media_kind == MEDIA_IMAGE:
            return self.accept_images
        if media_kind == MEDIA_DOCUMENT:
            return self.accept_documents
        return False


@dataclass
class ClassificationResult:
    is_payment_proof: bool
    confidence: int = 0
    amount: Optional[Decimal] = None
    amount_raw_text: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_tax_id: Optional[str] = None
    reason: Optional[str] = None
    model: Optional[str] = None
    value_source: Optional[str] = None
    raw_output: Optional[str] = None

    def is_actionable(self, threshold: int) -> bool:
        return self.is_payment_proof and self.confidence >= threshold

    def to_log(self) -> dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount) if self.amount is not None else None
        if data.get("raw_output"):
            data["raw_output"] = data["raw_output"][:1000]
        return data


@dataclass
class AttributionMatch:
    ad_id: Optional[str] = None
    adset_id: Optional[str] = None
    campaign_id: Optional[str] = None
    ad_account_id: Optional[UUID] = None
    strategy: Optional[str] = None
    name: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.campaign_id is not None

    def to_log(self) -> dict[str, Any]:
        data = asdict(self)
        data["ad_account_id"] = str(self.ad_account_id) if self.ad_account_id else None
        return data


@dataclass
class DispatchAttempt:
    target_id: str
    path: str
    success: bool
    action_source: Optional[str] = None
    ad_account_id: Optional[str] = None
    external_error_code: Optional[int] = None
    error_message: Optional[str] = None
    events_received: Optional[int] = None

    def to_log(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineDeadline:
    """Overall wall-clock budget for one invocation."""

    seconds: float
    started_at: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        return self.seconds - (time.monotonic() - self.started_at)

    def expired(self) -> bool:
        return self.remaining() <= 0

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)
