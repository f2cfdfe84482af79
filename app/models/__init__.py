from app.models.ad_account import AdAccount
from app.models.ad_record import AdRecord
from app.models.automation import AutomationFlow, AutomationSession, FlowDelayJob
from app.models.contact import Contact
from app.models.instance import WhatsAppInstance
from app.models.label_cache import LabelCacheEntry
from app.models.lead import Lead
from app.models.notification import NotificationTemplate, PushQueueItem
from app.models.paid_contact_claim import PaidContactClaim
from app.models.payment_recipient import PaymentRecipient
from app.models.registered_pixel import RegisteredPixel
from app.models.run_log import PipelineRunLog
from app.models.tag_config import TagConfig

__all__ = [
    "WhatsAppInstance",
    "TagConfig",
    "Contact",
    "Lead",
    "AdRecord",
    "AdAccount",
    "RegisteredPixel",
    "PaymentRecipient",
    "LabelCacheEntry",
    "PaidContactClaim",
    "PipelineRunLog",
    "AutomationFlow",
    "AutomationSession",
    "FlowDelayJob",
    "NotificationTemplate",
    "PushQueueItem",
]
