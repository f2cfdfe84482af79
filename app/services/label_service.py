import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import LabelCacheEntry
from app.services.gateway_service import ChatGateway, GatewayError
from app.services.result import Result

logger = get_logger("label_service")


class LabelCache:
    """Label id cache for one (tenant, instance, label name), backed by ``label_cache``."""

    def __init__(self, db: Session, gateway: ChatGateway, *, tenant_id: UUID, instance_id: UUID, label_name: str):
        self.db = db
        self.gateway = gateway
        self.tenant_id = tenant_id
        self.instance_id = instance_id
        self.label_name = label_name

    def cached_id(self) -> Optional[str]:
        entry = (
            self.db.query(LabelCacheEntry)
            .filter(
                LabelCacheEntry.tenant_id == self.tenant_id,
                LabelCacheEntry.instance_id == self.instance_id,
                LabelCacheEntry.label_name == self.label_name,
            )
            .first()
        )
        return entry.label_id if entry else None

    def store(self, label_id: Optional[str]) -> None:
        now = datetime.now(timezone.utc)
        stmt = insert(LabelCacheEntry).values(
            id=uuid.uuid4(),
            tenant_id=self.tenant_id,
            instance_id=self.instance_id,
            label_name=self.label_name,
            label_id=label_id,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "instance_id", "label_name"],
            set_={"label_id": label_id, "updated_at": now},
        )
        self.db.execute(stmt)
        self.db.commit()

    def invalidate(self) -> None:
        self.store(None)

    def _find_by_name(self) -> Optional[str]:
        wanted = self.label_name.strip().casefold()
        for label in self.gateway.list_labels():
            if label.name.strip().casefold() == wanted:
                return label.id
        return None

    def resolve_or_create(self) -> Optional[str]:
        """Look the label up by name on the gateway, creating it when absent.

        Any fresh id is written to the cache. Gateway errors propagate.
        """
        label_id = self._find_by_name()
        if label_id is None:
            created_id = self.gateway.create_label(self.label_name)
            label_id = self._find_by_name() or created_id
            logger.info(
                "Created label on gateway",
                extra={"context": {"label_name": self.label_name, "label_id": label_id}},
            )
        if label_id is not None:
            self.store(label_id)
        return label_id

    def get_id(self) -> Optional[str]:
        return self.cached_id() or self.resolve_or_create()


def _failure_from(exc: Exception) -> Result[str]:
    if isinstance(exc, httpx.TimeoutException):
        return Result.failure(f"Gateway timeout: {exc}", code="timeout")
    if isinstance(exc, GatewayError) and exc.is_missing_label:
        return Result.failure(exc.message, code="label_not_found")
    return Result.failure(str(exc), code="http_error")


def apply_paid_label(cache: LabelCache, phone: str) -> Result[str]:
    """Apply the paid label to ``phone``; returns the label id used.

    A "label does not exist" rejection invalidates the cache, re-resolves
    once and retries the apply once. Anything else is terminal.
    """
    try:
        label_id = cache.get_id()
    except (GatewayError, httpx.HTTPError) as exc:
        logger.error("Label resolution failed", extra={"context": {"phone": phone, "error": str(exc)}})
        return _failure_from(exc)
    if label_id is None:
        return Result.failure(f"Label '{cache.label_name}' could not be resolved", code="label_not_found")

    try:
        cache.gateway.apply_label(phone, label_id)
        return Result.success(label_id)
    except GatewayError as exc:
        if not exc.is_missing_label:
            logger.error("Label apply failed", extra={"context": {"phone": phone, "error": str(exc)}})
            return _failure_from(exc)
        logger.warning(
            "Cached label id is stale, re-resolving",
            extra={"context": {"phone": phone, "label_id": label_id}},
        )
    except httpx.HTTPError as exc:
        logger.error("Label apply failed", extra={"context": {"phone": phone, "error": str(exc)}})
        return _failure_from(exc)

    try:
        cache.invalidate()
        label_id = cache.resolve_or_create()
        if label_id is None:
            return Result.failure(f"Label '{cache.label_name}' could not be resolved", code="label_not_found")
        cache.gateway.apply_label(phone, label_id)
    except (GatewayError, httpx.HTTPError) as exc:
        logger.error("Label apply retry failed", extra={"context": {"phone": phone, "error": str(exc)}})
        return _failure_from(exc)
    return Result.success(label_id)
