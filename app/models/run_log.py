import uuid

from sqlalchemy import Boolean, Column, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class PipelineRunLog(Base):
    __tablename__ = "pipeline_run_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    instance_id = Column(UUID(as_uuid=True), nullable=False)
    config_id = Column(UUID(as_uuid=True))
    message_id = Column(Text)
    contact_phone = Column(Text, nullable=False)
    media_kind = Column(Text)  # image, document

    is_payment_proof = Column(Boolean, nullable=False, default=False)
    confidence = Column(Integer)
    extracted_value = Column(Numeric(12, 2))
    value_source = Column(Text)
    classification = Column(JSONB)

    fraud_check = Column(Text, nullable=False, default="skipped")  # skipped, passed, mismatch
    already_labeled = Column(Boolean, nullable=False, default=False)
    label_applied = Column(Boolean, nullable=False, default=False)
    label_error = Column(Text)
    charge_status = Column(Text)

    attribution = Column(JSONB)
    campaign_id = Column(Text)
    ctwa_clid = Column(Text)

    dispatch_attempts = Column(JSONB, nullable=False, default=list)
    conversion_sent = Column(Boolean, nullable=False, default=False)
    conversion_pixel_id = Column(Text)
    conversion_error = Column(Text)

    notification_status = Column(Text)
    automation_status = Column(Text)

    stage_errors = Column(JSONB, nullable=False, default=dict)
    error_message = Column(Text)
    duration_ms = Column(Integer)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
