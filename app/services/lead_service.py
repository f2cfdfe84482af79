from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import AdAccount, Contact, Lead
from app.services.pipeline_types import AttributionMatch

logger = get_logger("lead_service")

# Filled only while null on an existing lead
WRITE_ONCE_FIELDS = ("ad_id", "adset_id", "campaign_id", "ad_account_id", "attribution_strategy")
CLICK_FIELDS = ("ctwa_clid", "fbclid", "source_url")


def find_contact(db: Session, *, tenant_id: UUID, instance_id: UUID, phone: str) -> Optional[Contact]:
    return (
        db.query(Contact)
        .filter(Contact.tenant_id == tenant_id, Contact.instance_id == instance_id, Contact.phone == phone)
        .first()
    )


def find_lead(db: Session, *, tenant_id: UUID, phone: str) -> Optional[Lead]:
    return db.query(Lead).filter(Lead.tenant_id == tenant_id, Lead.phone == phone).first()


def default_ad_account_id(db: Session, tenant_id: UUID) -> Optional[UUID]:
    """The tenant's ad account when exactly one is selected."""
    selected = (
        db.query(AdAccount.id)
        .filter(AdAccount.tenant_id == tenant_id, AdAccount.is_selected.is_(True))
        .limit(2)
        .all()
    )
    if len(selected) == 1:
        return selected[0][0]
    return None


def merge_into_lead(lead: Lead, values: dict) -> list[str]:
    """Copy write-once values onto ``lead`` where it has none. Returns changed fields."""
    changed = []
    for name in WRITE_ONCE_FIELDS + CLICK_FIELDS:
        new_value = values.get(name)
        if new_value is None:
            continue
        if getattr(lead, name) is None:
            setattr(lead, name, new_value)
            changed.append(name)
    return changed


def upsert_lead(
    db: Session,
    *,
    tenant_id: UUID,
    instance_id: UUID,
    phone: str,
    value: Optional[Decimal],
    attribution: AttributionMatch,
    ctwa_clid: Optional[str] = None,
    fbclid: Optional[str] = None,
    source_url: Optional[str] = None,
) -> Lead:
    """Record a purchase on the contact's lead.

    Purchase fields are always refreshed. Attribution fields are first
    writer wins: an existing non-null value is never overwritten.
    """
    now = datetime.now(timezone.utc)
    values = {
        "ad_id": attribution.ad_id,
        "adset_id": attribution.adset_id,
        "campaign_id": attribution.campaign_id,
        "ad_account_id": attribution.ad_account_id,
        "attribution_strategy": attribution.strategy if attribution.matched else None,
        "ctwa_clid": ctwa_clid,
        "fbclid": fbclid,
        "source_url": source_url,
    }
    lead = find_lead(db, tenant_id=tenant_id, phone=phone)
    if lead is None:
        create_values = dict(values)
        if create_values["ad_account_id"] is None:
            create_values["ad_account_id"] = default_ad_account_id(db, tenant_id)
        lead = Lead(
            tenant_id=tenant_id,
            phone=phone,
            instance_id=instance_id,
            first_contact_at=now,
            purchase_sent_at=now,
            purchase_value=value or Decimal("0"),
            updated_at=now,
            **create_values,
        )
        db.add(lead)
        try:
            db.commit()
            logger.info("Lead created", extra={"context": {"tenant_id": str(tenant_id), "phone": phone}})
            return lead
        except IntegrityError:
            # concurrent insert for the same contact; fall through to the update path
            db.rollback()
            lead = find_lead(db, tenant_id=tenant_id, phone=phone)
            if lead is None:
                raise

    changed = merge_into_lead(lead, values)
    lead.purchase_sent_at = now
    lead.purchase_value = value or Decimal("0")
    lead.updated_at = now
    db.commit()
    logger.info(
        "Lead updated",
        extra={"context": {"tenant_id": str(tenant_id), "phone": phone, "filled_fields": changed}},
    )
    return lead
