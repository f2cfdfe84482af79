from __future__ import annotations

import uuid
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.models import PaidContactClaim, PipelineRunLog


def was_already_labeled(db: Session, *, tenant_id: UUID, instance_id: UUID, phone: str) -> bool:
    """True when a previous run for this contact recorded a successful label."""
    row = (
        db.query(PipelineRunLog.id)
        .filter(
            PipelineRunLog.tenant_id == tenant_id,
            PipelineRunLog.instance_id == instance_id,
            PipelineRunLog.contact_phone == phone,
            PipelineRunLog.label_applied.is_(True),
        )
        .first()
    )
    return row is not None


def claim_paid_contact(db: Session, *, tenant_id: UUID, instance_id: UUID, phone: str, run_id: UUID) -> bool:
    """Atomically claim the right to label and dispatch for this contact.

    Two concurrent deliveries can both pass ``was_already_labeled``; only the
    one whose insert lands gets True.
    """
    stmt = (
        insert(PaidContactClaim)
        .values(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            instance_id=instance_id,
            phone=phone,
            run_id=run_id,
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "instance_id", "phone"])
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount > 0


def release_paid_contact(db: Session, *, tenant_id: UUID, instance_id: UUID, phone: str, run_id: UUID) -> bool:
    """Drop this run's claim so a later proof can retry labeling."""
    deleted = (
        db.query(PaidContactClaim)
        .filter(
            PaidContactClaim.tenant_id == tenant_id,
            PaidContactClaim.instance_id == instance_id,
            PaidContactClaim.phone == phone,
            PaidContactClaim.run_id == run_id,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0
