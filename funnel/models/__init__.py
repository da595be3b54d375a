"""
Database models - import all models here so Alembic can discover them.
"""
from funnel.models.lead import Lead
from funnel.models.lead_profile import LeadProfile
from funnel.models.conversation import Conversation
from funnel.models.ai_run import AiRun
from funnel.models.message import Message
from funnel.models.followup import Followup
from funnel.models.handoff import Handoff
from funnel.models.photo_asset import PhotoAsset
from funnel.models.notification import Notification
from funnel.models.event_log import EventLog
from funnel.models.task_queue import TaskQueue

__all__ = [
    "Lead",
    "LeadProfile",
    "Conversation",
    "AiRun",
    "Message",
    "Followup",
    "Handoff",
    "PhotoAsset",
    "Notification",
    "EventLog",
    "TaskQueue",
]
