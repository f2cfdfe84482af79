import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class AdRecord(Base):
    __tablename__ = "ad_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    ad_id = Column(Text, nullable=False)
    adset_id = Column(Text)
    campaign_id = Column(Text)
    ad_account_id = Column(UUID(as_uuid=True))
    name = Column(Text)
    effective_object_story_id = Column(Text)  # "<page_id>_<post_id>"
    ad_post_url = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
