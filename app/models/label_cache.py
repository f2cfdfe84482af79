import uuid

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class LabelCacheEntry(Base):
    __tablename__ = "label_cache"
    __table_args__ = (UniqueConstraint("tenant_id", "instance_id", "label_name"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    instance_id = Column(UUID(as_uuid=True), nullable=False)
    label_name = Column(Text, nullable=False)
    label_id = Column(Text)  # null after invalidation
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
