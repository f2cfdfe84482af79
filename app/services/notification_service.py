from __future__ import annotations

import random
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import NotificationTemplate, PushQueueItem
from app.services.pipeline_types import PipelineConfig
from app.services.result import Result

logger = get_logger("notification_service")

REDACTED_VALUE = "R$ ***"

DEFAULT_SALE_TEMPLATES = [
    "🔥 Nova venda de {value}",
    "💸 Pix recebido: {value}",
    "🤑 Pingou {value}",
    "🔔 Venda confirmada: {value}",
    "💰 Dinheiro na conta: {value}",
]


def format_brl(value: Optional[Decimal]) -> str:
    """1234.5 -> 'R$ 1.234,50'."""
    amount = value if value is not None else Decimal("0")
    text = f"{amount:,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def render_template(body: str, *, value: Optional[Decimal], phone: str, name: Optional[str], redact: bool) -> str:
    rendered_value = REDACTED_VALUE if redact else format_brl(value)
    return (
        body.replace("{value}", rendered_value)
        .replace("{phone}", phone or "")
        .replace("{name}", name or phone or "")
    )


def pick_template(templates: list[NotificationTemplate], rng: random.Random | None = None) -> str:
    rng = rng or random
    bodies = [template.body for template in templates if template.body]
    return rng.choice(bodies or DEFAULT_SALE_TEMPLATES)


def enqueue_sale_notification(
    db: Session,
    config: PipelineConfig,
    *,
    phone: str,
    name: Optional[str],
    value: Optional[Decimal],
    run_id: uuid.UUID,
    rng: random.Random | None = None,
) -> Result[bool]:
    """Enqueue one push notification for the sale. Returns whether a row was inserted."""
    if not settings.push_queue_enabled or not config.notifications_enabled:
        return Result.skip("Notifications disabled", code="disabled")

    templates = (
        db.query(NotificationTemplate)
        .filter(NotificationTemplate.tenant_id == config.tenant_id, NotificationTemplate.is_active.is_(True))
        .all()
    )
    message = render_template(
        pick_template(templates, rng),
        value=value,
        phone=phone,
        name=name,
        redact=config.redact_value,
    )
    payload = {
        "type": "sale",
        "message": message,
        "phone": phone,
        "instance_id": str(config.instance_id),
        "run_id": str(run_id),
    }
    dedupe_key = f"sale:{config.instance_id}:{phone}"

    stmt = (
        insert(PushQueueItem)
        .values(
            id=uuid.uuid4(),
            tenant_id=config.tenant_id,
            dedupe_key=dedupe_key,
            payload_json=payload,
            status="PENDING",
            attempts=0,
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "dedupe_key"])
    )
    with db.begin_nested():
        result = db.execute(stmt)
    db.commit()

    inserted = result.rowcount > 0
    logger.info(
        "Sale notification enqueued" if inserted else "Sale notification already queued",
        extra={"context": {"tenant_id": str(config.tenant_id), "phone": phone, "dedupe_key": dedupe_key}},
    )
    return Result.success(inserted)
