from app.models.case import Case, CaseAttachment, CaseField, Pendency, TimelineEvent
from app.models.identity import CustomerAccount, UserProfile, Vendor
from app.models.instance import WaInstance
from app.models.job import Job
from app.models.journey import Journey, TenantJourney
from app.models.message import WaMessage, WebhookInbox
from app.models.presence import (
    BankHourLedger,
    PresenceEmployeeConfig,
    PresenceLocation,
    PresencePendingCommand,
    PresencePolicy,
    TimePunch,
    TimePunchAdjustment,
)

__all__ = [
    "WaInstance",
    "Journey",
    "TenantJourney",
    "UserProfile",
    "Vendor",
    "CustomerAccount",
    "Case",
    "CaseField",
    "CaseAttachment",
    "Pendency",
    "TimelineEvent",
    "WaMessage",
    "WebhookInbox",
    "Job",
    "PresenceLocation",
    "PresencePolicy",
    "PresenceEmployeeConfig",
    "TimePunch",
    "TimePunchAdjustment",
    "BankHourLedger",
    "PresencePendingCommand",
]
