"""Anti-fraud check of the payee printed on a proof against the tenant registry."""

import re
import unicodedata
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import PaymentRecipient
from app.services.pipeline_types import FRAUD_MISMATCH, FRAUD_PASSED, FRAUD_SKIPPED, ClassificationResult

logger = get_logger("recipient_verifier")

MIN_TOKEN_LENGTH = 3
MIN_TAX_ID_DIGITS = 6


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = re.sub(r"[^\w\s]", " ", stripped.casefold())
    return re.sub(r"\s+", " ", stripped).strip()


def _digit_runs(value: Optional[str]) -> list[str]:
    """Digit runs long enough to compare; masked ids like ***.456.789-** keep their visible part."""
    if not value:
        return []
    return [run for run in re.findall(r"\d+", value.replace(".", "").replace("-", "").replace("/", ""))
            if len(run) >= MIN_TAX_ID_DIGITS]


def names_match(extracted: Optional[str], registered: Optional[str]) -> bool:
    left = normalize_name(extracted)
    right = normalize_name(registered)
    if not left or not right:
        return False
    if left in right or right in left:
        return True
    return any(len(token) >= MIN_TOKEN_LENGTH and token in right for token in left.split())


def tax_ids_match(extracted: Optional[str], registered: Optional[str]) -> bool:
    registered_runs = _digit_runs(registered)
    if not registered_runs:
        return False
    for run in _digit_runs(extracted):
        for registered_run in registered_runs:
            if run in registered_run or registered_run in run:
                return True
    return False


def verify_recipient(
    classification: ClassificationResult,
    recipients: list[PaymentRecipient],
) -> str:
    """Return ``skipped`` for an empty registry, else ``passed`` or ``mismatch``."""
    if not recipients:
        return FRAUD_SKIPPED
    for recipient in recipients:
        if names_match(classification.recipient_name, recipient.name):
            return FRAUD_PASSED
        if tax_ids_match(classification.recipient_tax_id, recipient.tax_id):
            return FRAUD_PASSED
    return FRAUD_MISMATCH


def load_recipients(db: Session, tenant_id: UUID) -> list[PaymentRecipient]:
    return db.query(PaymentRecipient).filter(PaymentRecipient.tenant_id == tenant_id).all()


def check_recipient(db: Session, tenant_id: UUID, classification: ClassificationResult) -> str:
    recipients = load_recipients(db, tenant_id)
    verdict = verify_recipient(classification, recipients)
    if verdict == FRAUD_MISMATCH:
        logger.warning(
            "Recipient mismatch",
            extra={
                "context": {
                    "tenant_id": str(tenant_id),
                    "recipient_name": classification.recipient_name,
                    "recipient_tax_id": classification.recipient_tax_id,
                    "registry_size": len(recipients),
                }
            },
        )
    return verdict
