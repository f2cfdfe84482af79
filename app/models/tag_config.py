import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class TagConfig(Base):
    __tablename__ = "tag_configs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    instance_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_instances.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    filter_images = Column(Boolean, nullable=False, default=True)
    filter_pdfs = Column(Boolean, nullable=False, default=True)
    confidence_threshold = Column(Integer, nullable=False, default=70)
    label_name = Column(Text, nullable=False, default="Pago")

    charge_enabled = Column(Boolean, nullable=False, default=False)
    charge_amount = Column(Numeric(12, 2))
    charge_pix_key = Column(Text)
    charge_pix_key_type = Column(Text)  # cpf, cnpj, email, phone, evp
    charge_payee_name = Column(Text)
    charge_message = Column(Text)

    notifications_enabled = Column(Boolean, nullable=False, default=True)
    redact_value = Column(Boolean, nullable=False, default=False)
    pause_other_flows = Column(Boolean, nullable=False, default=False)
    currency = Column(Text, nullable=False, default="BRL")

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
