"""
ORM models. Importing this package registers every table on ``Base.metadata``.
"""
from peoplesync.models.base import Base
from peoplesync.models.organization import Organization
from peoplesync.models.connection import PcoConnection
from peoplesync.models.webhook import PcoWebhook
from peoplesync.models.people import Person, PersonEmail, EmailStatus, EmailStatusValue
from peoplesync.models.lists import PcoListCategory, PcoList, PcoListMember
from peoplesync.models.sync_status import SyncStatus
from peoplesync.models.quota import OrgEmailUsage
from peoplesync.models.campaign import EmailCampaign, EmailCategory, CategoryUnsubscribe, CampaignStatus

__all__ = [
    "Base",
    "Organization",
    "PcoConnection",
    "PcoWebhook",
    "Person",
    "PersonEmail",
    "EmailStatus",
    "EmailStatusValue",
    "PcoListCategory",
    "PcoList",
    "PcoListMember",
    "SyncStatus",
    "OrgEmailUsage",
    "EmailCampaign",
    "EmailCategory",
    "CategoryUnsubscribe",
    "CampaignStatus",
]
