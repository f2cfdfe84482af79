import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class AutomationFlow(Base):
    __tablename__ = "automation_flows"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(Text, nullable=False)
    trigger_type = Column(Text, nullable=False)  # keyword, sale, tag, ...
    is_active = Column(Boolean, nullable=False, default=True)
    nodes = Column(JSONB, nullable=False, default=list)
    assigned_instances = Column(JSONB, nullable=False, default=list)  # empty = all
    pause_other_flows = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=0)


class AutomationSession(Base):
    __tablename__ = "automation_sessions"
    __table_args__ = (UniqueConstraint("flow_id", "contact_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    flow_id = Column(UUID(as_uuid=True), ForeignKey("automation_flows.id"), nullable=False)
    contact_id = Column(UUID(as_uuid=True), nullable=False)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    instance_id = Column(UUID(as_uuid=True))
    current_node_id = Column(Text, nullable=False)
    variables = Column(JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="active")  # active, paused, completed
    started_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_interaction = Column(TIMESTAMP(timezone=True))


class FlowDelayJob(Base):
    __tablename__ = "flow_delay_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(UUID(as_uuid=True), ForeignKey("automation_sessions.id"), nullable=False)
    run_at = Column(TIMESTAMP(timezone=True), nullable=False)
    status = Column(Text, nullable=False, default="scheduled")  # scheduled, done, cancelled
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
