"""Purchase conversion dispatch to the ad platform (Graph API Conversions API).

Two call paths:

- report-to-all: one event per tenant ad account with conversions enabled,
  each account attempted in a bounded thread pool regardless of the others.
- first-success: the tenant's registered pixels by descending priority,
  stopping at the first pixel that accepts the event.
"""

import hashlib
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import AdAccount, RegisteredPixel
from app.services.pipeline_types import PATH_FIRST_SUCCESS, PATH_REPORT_ALL, DispatchAttempt

logger = get_logger("conversion_service")

SUBCODE_PAGE_MISMATCH = 2804024
SUBCODE_NO_AD_INFO = 2804003
EXPECTED_REJECTION_SUBCODES = {SUBCODE_PAGE_MISMATCH, SUBCODE_NO_AD_INFO}

ACTION_SOURCE_WEBSITE = "website"
ACTION_SOURCE_BUSINESS_MESSAGING = "business_messaging"


class GraphAPIError(Exception):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        super().__init__(message)

    @property
    def is_expected_rejection(self) -> bool:
        return self.subcode in EXPECTED_REJECTION_SUBCODES


class GraphAPIClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        version: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        base_url = base_url or settings.graph_api_base_url
        version = version or settings.graph_api_version
        self.base_url = f"{base_url.rstrip('/')}/{version}"
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.http_timeout_seconds

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            data = {}
        error = data.get("error") if isinstance(data, dict) else None
        if error or response.status_code >= 400:
            error = error or {}
            raise GraphAPIError(
                error.get("message") or f"Graph API error: {response.status_code}",
                status_code=response.status_code,
                code=error.get("code"),
                subcode=error.get("error_subcode"),
            )
        return data

    def list_pixels(self, ad_account_id: str, access_token: str) -> list[dict]:
        url = f"{self.base_url}/act_{ad_account_id}/adspixels"
        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.get(url, params={"fields": "id,name", "access_token": access_token})
        data = self._raise_for_error(response)
        return [item for item in data.get("data", []) if isinstance(item, dict) and item.get("id")]

    def send_conversion_event(self, pixel_id: str, access_token: str, event: dict) -> int:
        """POST one event; returns ``events_received``."""
        url = f"{self.base_url}/{pixel_id}/events"
        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(url, json={"data": [event], "access_token": access_token})
        data = self._raise_for_error(response)
        return int(data.get("events_received") or 0)


def hash_phone(phone: str) -> str:
    normalized = re.sub(r"\D", "", (phone or "").strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def build_purchase_event(
    *,
    phone: str,
    value: Optional[Decimal],
    currency: str,
    event_id: str,
    ctwa_clid: Optional[str] = None,
    fbclid: Optional[str] = None,
    page_id: Optional[str] = None,
    event_time: Optional[int] = None,
) -> dict:
    """Purchase event payload. ``page_id`` switches to business messaging mode."""
    now = event_time or int(time.time())
    business_messaging = bool(page_id and ctwa_clid)
    event = {
        "event_name": "Purchase",
        "event_time": now,
        "event_id": event_id,
        "action_source": ACTION_SOURCE_BUSINESS_MESSAGING if business_messaging else ACTION_SOURCE_WEBSITE,
        "user_data": {"ph": [hash_phone(phone)]},
        "custom_data": {
            "currency": currency or "BRL",
            "value": float(value) if value is not None else 0.0,
        },
    }
    if business_messaging:
        event["messaging_channel"] = "whatsapp"
        event["user_data"]["page_id"] = page_id
        event["user_data"]["ctwa_clid"] = ctwa_clid
    else:
        if fbclid:
            event["user_data"]["fbc"] = f"fb.1.{now * 1000}.{fbclid}"
        if ctwa_clid:
            event["user_data"]["fbp"] = ctwa_clid
    return event


@dataclass(frozen=True)
class ConversionRequest:
    tenant_id: UUID
    phone: str
    value: Optional[Decimal]
    currency: str
    event_id: str
    ctwa_clid: Optional[str] = None
    fbclid: Optional[str] = None


@dataclass(frozen=True)
class AccountTarget:
    ad_account_id: str
    access_token: str
    selected_pixel_id: Optional[str]


def _attempt_from_error(exc: Exception, target_id: str, path: str, **fields) -> DispatchAttempt:
    if isinstance(exc, GraphAPIError):
        return DispatchAttempt(
            target_id=target_id,
            path=path,
            success=False,
            external_error_code=exc.subcode or exc.code,
            error_message=exc.message,
            **fields,
        )
    if isinstance(exc, httpx.TimeoutException):
        return DispatchAttempt(target_id=target_id, path=path, success=False, error_message=f"timeout: {exc}", **fields)
    return DispatchAttempt(target_id=target_id, path=path, success=False, error_message=str(exc), **fields)


def _send_to_account(client: GraphAPIClient, target: AccountTarget, request: ConversionRequest) -> DispatchAttempt:
    fields = {"action_source": ACTION_SOURCE_WEBSITE, "ad_account_id": target.ad_account_id}
    pixel_id = target.selected_pixel_id
    try:
        if not pixel_id:
            pixels = client.list_pixels(target.ad_account_id, target.access_token)
            if not pixels:
                return DispatchAttempt(
                    target_id=f"act_{target.ad_account_id}",
                    path=PATH_REPORT_ALL,
                    success=False,
                    error_message="No pixel found for ad account",
                    **fields,
                )
            pixel_id = str(pixels[0]["id"])
        event = build_purchase_event(
            phone=request.phone,
            value=request.value,
            currency=request.currency,
            event_id=request.event_id,
            ctwa_clid=request.ctwa_clid,
            fbclid=request.fbclid,
        )
        received = client.send_conversion_event(pixel_id, target.access_token, event)
    except (GraphAPIError, httpx.HTTPError) as exc:
        logger.warning(
            "Report-to-all dispatch failed",
            extra={"context": {"ad_account_id": target.ad_account_id, "pixel_id": pixel_id, "error": str(exc)}},
        )
        return _attempt_from_error(exc, pixel_id or f"act_{target.ad_account_id}", PATH_REPORT_ALL, **fields)

    return DispatchAttempt(
        target_id=pixel_id,
        path=PATH_REPORT_ALL,
        success=True,
        events_received=received,
        **fields,
    )


def report_to_all(
    db: Session,
    request: ConversionRequest,
    *,
    client: Optional[GraphAPIClient] = None,
    max_workers: Optional[int] = None,
) -> list[DispatchAttempt]:
    """Send the event to every conversion-enabled ad account; one attempt per account."""
    accounts = (
        db.query(AdAccount)
        .filter(
            AdAccount.tenant_id == request.tenant_id,
            AdAccount.conversions_enabled.is_(True),
            AdAccount.access_token.isnot(None),
        )
        .all()
    )
    # Plain snapshots: ORM instances stay on the request thread
    targets = [
        AccountTarget(
            ad_account_id=account.ad_account_id,
            access_token=account.access_token,
            selected_pixel_id=account.selected_pixel_id,
        )
        for account in accounts
    ]
    if not targets:
        return []

    client = client or GraphAPIClient()
    workers = max(1, min(max_workers or settings.dispatch_max_workers, len(targets)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        attempts = list(executor.map(lambda target: _send_to_account(client, target, request), targets))

    logger.info(
        "Report-to-all dispatch finished",
        extra={
            "context": {
                "tenant_id": str(request.tenant_id),
                "accounts": len(targets),
                "succeeded": sum(1 for attempt in attempts if attempt.success),
            }
        },
    )
    return attempts


def first_success(
    db: Session,
    request: ConversionRequest,
    *,
    client: Optional[GraphAPIClient] = None,
) -> list[DispatchAttempt]:
    """Try registered pixels by priority until one accepts the event."""
    pixels = (
        db.query(RegisteredPixel)
        .filter(RegisteredPixel.tenant_id == request.tenant_id, RegisteredPixel.is_active.is_(True))
        .order_by(RegisteredPixel.priority.desc())
        .all()
    )
    client = client or GraphAPIClient()
    attempts: list[DispatchAttempt] = []

    for pixel in pixels:
        page_id = pixel.page_id if request.ctwa_clid else None
        event = build_purchase_event(
            phone=request.phone,
            value=request.value,
            currency=request.currency,
            event_id=request.event_id,
            ctwa_clid=request.ctwa_clid,
            fbclid=request.fbclid,
            page_id=page_id,
        )
        action_source = event["action_source"]
        try:
            received = client.send_conversion_event(pixel.pixel_id, pixel.access_token, event)
        except GraphAPIError as exc:
            if exc.is_expected_rejection:
                logger.info(
                    "Pixel rejected event, trying next",
                    extra={"context": {"pixel_id": pixel.pixel_id, "subcode": exc.subcode}},
                )
            else:
                logger.warning(
                    "Pixel dispatch failed",
                    extra={"context": {"pixel_id": pixel.pixel_id, "error": exc.message}},
                )
            attempts.append(_attempt_from_error(exc, pixel.pixel_id, PATH_FIRST_SUCCESS, action_source=action_source))
            continue
        except httpx.HTTPError as exc:
            logger.warning(
                "Pixel dispatch failed",
                extra={"context": {"pixel_id": pixel.pixel_id, "error": str(exc)}},
            )
            attempts.append(_attempt_from_error(exc, pixel.pixel_id, PATH_FIRST_SUCCESS, action_source=action_source))
            continue

        attempts.append(
            DispatchAttempt(
                target_id=pixel.pixel_id,
                path=PATH_FIRST_SUCCESS,
                success=True,
                action_source=action_source,
                events_received=received,
            )
        )
        break

    return attempts
