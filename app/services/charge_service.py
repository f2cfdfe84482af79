from decimal import Decimal
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.gateway_service import ChatGateway, GatewayError, PayeeDetails
from app.services.pipeline_types import PipelineConfig
from app.services.result import Result

logger = get_logger("charge_service")


def charge_config_gap(config: PipelineConfig) -> Optional[str]:
    """Human readable reason the charge cannot be sent, or None when complete."""
    if not config.charge_pix_key:
        return "PIX key not configured"
    if config.charge_amount is None or config.charge_amount <= 0:
        return "Charge amount not configured"
    return None


def send_charge(gateway: ChatGateway, config: PipelineConfig, phone: str) -> Result[Decimal]:
    """Send the tenant's automated PIX payment request to the contact."""
    if not config.charge_enabled:
        return Result.skip("Charge disabled", code="disabled")
    gap = charge_config_gap(config)
    if gap:
        logger.info("Charge skipped", extra={"context": {"phone": phone, "reason": gap}})
        return Result.skip(gap, code="config_incomplete")

    payee = PayeeDetails(
        pix_key=config.charge_pix_key,
        pix_key_type=config.charge_pix_key_type,
        name=config.charge_payee_name,
    )
    try:
        gateway.request_payment(phone, config.charge_amount, payee, text=config.charge_message)
    except httpx.TimeoutException as exc:
        logger.warning("Charge request timed out", extra={"context": {"phone": phone, "error": str(exc)}})
        return Result.failure(f"Gateway timeout: {exc}", code="timeout")
    except (GatewayError, httpx.HTTPError) as exc:
        logger.error("Charge request failed", extra={"context": {"phone": phone, "error": str(exc)}})
        return Result.failure(str(exc), code="http_error")

    logger.info(
        "Charge requested",
        extra={"context": {"phone": phone, "amount": str(config.charge_amount)}},
    )
    return Result.success(config.charge_amount)
