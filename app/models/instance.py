import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class WhatsAppInstance(Base):
    __tablename__ = "whatsapp_instances"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    instance_name = Column(Text, nullable=False, unique=True)
    gateway_token = Column(Text)
    gateway_base_url = Column(Text)  # overrides settings.gateway_base_url
    status = Column(Text, default="connected")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
