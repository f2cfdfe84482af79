from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class MessageKey(BaseModel):
    remoteJid: Optional[str] = None
    fromMe: bool = False
    id: Optional[str] = None


class ImageMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    mimetype: Optional[str] = None
    caption: Optional[str] = None


class DocumentMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    mimetype: Optional[str] = None
    fileName: Optional[str] = None
    caption: Optional[str] = None


class MessageContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    imageMessage: Optional[ImageMessage] = None
    documentMessage: Optional[DocumentMessage] = None


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: Optional[MessageKey] = None
    message: Optional[MessageContent] = None
    messageType: Optional[str] = None
    pushName: Optional[str] = None
    messageTimestamp: Optional[int] = None


class PaymentProofWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    instanceName: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("instanceName", "instance_name", "instance"),
    )
    data: Optional[WebhookData] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    run_id: Optional[UUID] = None
    is_payment_proof: Optional[bool] = None
    already_labeled: Optional[bool] = None
    label_applied: Optional[bool] = None
    fraud_check: Optional[str] = None
    campaign_id: Optional[str] = None
    conversion_sent: Optional[bool] = None
    extracted_value: Optional[Decimal] = None
    details: Optional[dict[str, Any]] = None
