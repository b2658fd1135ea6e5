from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class InteractionStatus(str, Enum):
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    RESOLVED = "RESOLVED"


@dataclass
class Interaction:
    """One tracked lifecycle of a conversation turn, from start to resolution."""

    id: str  # UUID
    chat_id: str
    agent_id: str
    workspace_id: str
    status: InteractionStatus
    start_at: datetime
    warned_at: Optional[datetime] = None
    transfer_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    user_id: Optional[str] = None  # set when a human took over


@dataclass
class Chat:
    id: str  # UUID
    agent_id: str
    workspace_id: str
    updated_at: datetime  # bumped by every new message
    human_talk: bool = False
    whatsapp_phone: Optional[str] = None
    read: bool = True
    un_read_count: int = 0


@dataclass
class Message:
    id: str  # UUID
    chat_id: str
    role: str  # system, assistant or user
    text: str
    created_at: datetime
    interaction_id: Optional[str] = None
    type: str = "text"
    sent_to_channel: bool = False
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    fail_reason: Optional[str] = None
    provider_message_id: Optional[str] = None


@dataclass
class AgentReminderSettings:
    agent_id: str
    enabled_reminder: bool = True
    reminder_interval_minutes: Optional[int] = None


@dataclass
class InteractionSnapshot:
    """An active interaction joined with its chat activity and agent reminder settings."""

    id: str
    chat_id: str
    agent_id: str
    workspace_id: str
    status: InteractionStatus
    start_at: datetime
    chat_updated_at: datetime
    human_talk: bool
    delivery_address: Optional[str] = None
    warned_at: Optional[datetime] = None
    transfer_at: Optional[datetime] = None
    reminder: Optional[AgentReminderSettings] = None


@dataclass
class TransitionGuard:
    """Conditions re-checked by the store inside a conditional update."""

    expected_status: Optional[InteractionStatus] = None
    chat_idle_before: Optional[datetime] = None
    warned_before: Optional[datetime] = None
    require_no_human_talk: bool = False


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class MessageView(CamelModel):
    id: str
    chat_id: str
    interaction_id: Optional[str] = None
    role: str
    type: str
    text: str
    created_at: datetime
    sent_to_channel: bool = False
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    fail_reason: Optional[str] = None


class ChatView(CamelModel):
    id: str
    agent_id: str
    workspace_id: str
    updated_at: datetime
    human_talk: bool
    whatsapp_phone: Optional[str] = None
    read: bool
    un_read_count: int


class InteractionWithMessages(CamelModel):
    id: str
    agent_id: str
    chat_id: str
    status: InteractionStatus
    start_at: datetime
    warned_at: Optional[datetime] = None
    transfer_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    user_id: Optional[str] = None
    messages: List[MessageView] = []


class ChatUpdateEvent(CamelModel):
    """Payload of the messageChatUpdate event pushed to live dashboards."""

    chat: ChatView
    latest_interaction: Optional[InteractionWithMessages] = None
    latest_message: MessageView
