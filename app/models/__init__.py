from app.models.channel import Channel
from app.models.client import Client
from app.models.flow import Flow, FlowOption, FlowStep
from app.models.lead import Lead
from app.models.lead_step_event import LeadStepEvent
from app.models.message import Message
from app.models.reminder_job import ReminderJob

__all__ = [
    "Client",
    "Channel",
    "Flow",
    "FlowStep",
    "FlowOption",
    "Lead",
    "Message",
    "LeadStepEvent",
    "ReminderJob",
]
