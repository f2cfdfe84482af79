from app.schemas.conversion import ManualConversionRequest, ManualConversionResponse, RunLogSummary
from app.schemas.webhook import PaymentProofWebhook, WebhookResponse

__all__ = [
    "PaymentProofWebhook",
    "WebhookResponse",
    "ManualConversionRequest",
    "ManualConversionResponse",
    "RunLogSummary",
]
