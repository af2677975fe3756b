"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from rsvp_dispatch.models.base import Base
from rsvp_dispatch.models.account import Account
from rsvp_dispatch.models.event import Event
from rsvp_dispatch.models.guest import Guest
from rsvp_dispatch.models.quota_ledger import QuotaLedger
from rsvp_dispatch.models.bulk_job import BulkMessageJob
from rsvp_dispatch.models.delivery_log import DeliveryLogEntry
from rsvp_dispatch.models.message_template import MessageTemplate
from rsvp_dispatch.models.automation import AutomationFlow, AutomationFlowRecipient

# Export all for convenience
__all__ = [
    "Base", "Account", "Event", "Guest", "QuotaLedger", "BulkMessageJob",
    "DeliveryLogEntry", "MessageTemplate", "AutomationFlow", "AutomationFlowRecipient"
]
