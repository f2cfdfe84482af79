import uuid

from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    instance_id = Column(UUID(as_uuid=True), nullable=False)
    phone = Column(Text, nullable=False)
    name = Column(Text)
    source_url = Column(Text)  # ad link captured from the first inbound message
    ctwa_clid = Column(Text)
    fbclid = Column(Text)
    flow_paused = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_message_at = Column(TIMESTAMP(timezone=True))
