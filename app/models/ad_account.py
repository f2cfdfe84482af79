import uuid

from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class AdAccount(Base):
    __tablename__ = "ad_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    ad_account_id = Column(Text, nullable=False)  # without the "act_" prefix
    name = Column(Text)
    access_token = Column(Text)
    is_selected = Column(Boolean, nullable=False, default=False)
    conversions_enabled = Column(Boolean, nullable=False, default=True)
    selected_pixel_id = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
