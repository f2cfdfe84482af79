import uuid

from sqlalchemy import Column, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (UniqueConstraint("tenant_id", "phone"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    phone = Column(Text, nullable=False)
    instance_id = Column(UUID(as_uuid=True))
    first_contact_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    purchase_sent_at = Column(TIMESTAMP(timezone=True))
    purchase_value = Column(Numeric(12, 2), nullable=False, default=0)

    # first writer wins: only filled while null
    ad_id = Column(Text)
    adset_id = Column(Text)
    campaign_id = Column(Text)
    ad_account_id = Column(UUID(as_uuid=True))
    attribution_strategy = Column(Text)

    ctwa_clid = Column(Text)
    fbclid = Column(Text)
    source_url = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
