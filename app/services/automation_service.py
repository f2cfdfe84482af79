import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import AutomationFlow, AutomationSession, Contact, FlowDelayJob
from app.services.pipeline_types import PipelineConfig
from app.services.result import Result

logger = get_logger("automation_service")

SALE_TRIGGER = "sale"
DEFAULT_START_NODE = "start-1"


def pick_start_node_id(nodes) -> str:
    for node in nodes if isinstance(nodes, list) else []:
        if isinstance(node, dict) and str(node.get("type") or "").lower() == "start" and node.get("id"):
            return str(node["id"])
    return DEFAULT_START_NODE


def flow_applies_to_instance(flow: AutomationFlow, instance_id) -> bool:
    assigned = flow.assigned_instances if isinstance(flow.assigned_instances, list) else []
    if not assigned:
        return True
    return str(instance_id) in {str(item) for item in assigned}


def pause_other_sessions(db: Session, *, tenant_id, contact_id, keep_flow_id, now: datetime) -> int:
    """Pause the contact's other active sessions and cancel their scheduled delays."""
    sessions = (
        db.query(AutomationSession)
        .filter(
            AutomationSession.tenant_id == tenant_id,
            AutomationSession.contact_id == contact_id,
            AutomationSession.status == "active",
            AutomationSession.flow_id != keep_flow_id,
        )
        .all()
    )
    for session in sessions:
        db.query(FlowDelayJob).filter(
            FlowDelayJob.session_id == session.id,
            FlowDelayJob.status == "scheduled",
        ).update({"status": "cancelled", "updated_at": now}, synchronize_session=False)
        session.status = "paused"
        session.last_interaction = now
    return len(sessions)


def start_session(db: Session, flow: AutomationFlow, contact: Contact, now: datetime) -> None:
    variables = {
        "lastMessage": "",
        "contactName": contact.name or contact.phone,
        "_sent_node_ids": [],
        "_triggered_by": SALE_TRIGGER,
    }
    start_node_id = pick_start_node_id(flow.nodes)
    stmt = insert(AutomationSession).values(
        id=uuid.uuid4(),
        flow_id=flow.id,
        contact_id=contact.id,
        tenant_id=contact.tenant_id,
        instance_id=contact.instance_id,
        current_node_id=start_node_id,
        variables=variables,
        status="active",
        started_at=now,
        last_interaction=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["flow_id", "contact_id"],
        set_={
            "current_node_id": start_node_id,
            "variables": variables,
            "status": "active",
            "started_at": now,
            "last_interaction": now,
        },
    )
    db.execute(stmt)


def trigger_sale_flows(db: Session, config: PipelineConfig, contact: Optional[Contact]) -> Result[int]:
    """Start every active sale-triggered flow for the contact. Returns how many started."""
    if contact is None:
        return Result.skip("Contact not found", code="no_contact")

    flows = (
        db.query(AutomationFlow)
        .filter(
            AutomationFlow.tenant_id == config.tenant_id,
            AutomationFlow.is_active.is_(True),
            AutomationFlow.trigger_type == SALE_TRIGGER,
        )
        .order_by(AutomationFlow.priority.desc())
        .all()
    )
    flows = [flow for flow in flows if flow_applies_to_instance(flow, config.instance_id)]
    if not flows:
        return Result.skip("No active sale flows", code="no_flows")

    now = datetime.now(timezone.utc)
    with db.begin_nested():
        for flow in flows:
            if flow.pause_other_flows or config.pause_other_flows:
                paused = pause_other_sessions(
                    db, tenant_id=config.tenant_id, contact_id=contact.id, keep_flow_id=flow.id, now=now
                )
                if paused:
                    logger.info(
                        "Paused other flow sessions",
                        extra={"context": {"flow_id": str(flow.id), "paused": paused}},
                    )
            start_session(db, flow, contact, now)
    db.commit()

    logger.info(
        "Sale flows triggered",
        extra={"context": {"contact_id": str(contact.id), "flows": [str(flow.id) for flow in flows]}},
    )
    return Result.success(len(flows))
