import base64
import binascii
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("gateway_service")

MISSING_LABEL_PATTERNS = [
    re.compile(r"label\s*(id)?\s*(not\s+found|does\s*n[o']t\s+exist|inexistente|nao\s+encontrad)", re.IGNORECASE),
    re.compile(r"invalid\s+label", re.IGNORECASE),
    re.compile(r"unknown\s+label", re.IGNORECASE),
]


class GatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def is_missing_label(self) -> bool:
        text = f"{self.message} {self.body or ''}"
        return any(pattern.search(text) for pattern in MISSING_LABEL_PATTERNS)


@dataclass(frozen=True)
class GatewayLabel:
    id: str
    name: str


@dataclass(frozen=True)
class PayeeDetails:
    pix_key: str
    pix_key_type: Optional[str] = None
    name: Optional[str] = None


class ChatGateway:
    """Client for the WhatsApp instance gateway (UAZAPI-compatible)."""

    def __init__(self, base_url: str, token: str, timeout_seconds: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.request(method, url, json=json, headers={"token": self.token})
        if response.status_code >= 400:
            raise GatewayError(
                f"Gateway {method} {path} failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        return response

    def download_media(self, message_id: str) -> tuple[bytes, str]:
        """Resolve a message id to (bytes, mime type)."""
        response = self._request("POST", "/media/download", json={"messageid": message_id})
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("Media download returned non-JSON body", body=response.text[:200]) from exc

        encoded = data.get("base64") or data.get("data")
        if not encoded:
            raise GatewayError("Media download returned no data")
        if isinstance(encoded, str) and encoded.startswith("data:") and "," in encoded:
            encoded = encoded.split(",", 1)[1]
        try:
            media_bytes = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise GatewayError(f"Media payload is not valid base64: {exc}") from exc

        mime_type = data.get("mimetype") or data.get("mimeType") or "application/octet-stream"
        return media_bytes, mime_type.split(";")[0].strip().lower()

    def list_labels(self) -> list[GatewayLabel]:
        response = self._request("GET", "/labels")
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Label listing returned non-JSON body", body=response.text[:200]) from exc

        items = payload.get("labels", []) if isinstance(payload, dict) else payload
        labels = []
        for item in items or []:
            if not isinstance(item, dict):
                continue
            label_id = item.get("labelid") or item.get("id")
            if label_id is None:
                continue
            labels.append(GatewayLabel(id=str(label_id), name=str(item.get("name") or "")))
        return labels

    def create_label(self, name: str) -> Optional[str]:
        """Create a label. Returns its id when the gateway echoes it back."""
        response = self._request("POST", "/label/edit", json={"name": name, "color": 1})
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict):
            label_id = payload.get("labelid") or payload.get("id")
            if label_id is not None:
                return str(label_id)
        return None

    def apply_label(self, phone: str, label_id: str) -> None:
        self._request("POST", "/chat/labels", json={"number": phone, "add_labelid": label_id})

    def request_payment(self, phone: str, amount: Decimal, payee: PayeeDetails, text: Optional[str] = None) -> None:
        body = {
            "number": phone,
            "amount": float(amount),
            "pixKey": payee.pix_key,
            "pixType": payee.pix_key_type or "evp",
            "pixName": payee.name or "",
        }
        if text:
            body["text"] = text
        self._request("POST", "/send/request-payment", json=body)
