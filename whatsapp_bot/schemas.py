"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook payload models for the messaging platform's delivery format
- Record models returned by the store (immutable snapshots of stored rows)
- Create/update request models with explicit per-field optional values
- Response models for the admin API
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


MessageStatus = Literal["received", "pending", "responded", "failed"]
ConversationState = Literal["active", "paused", "blocked"]


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting either spelling on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Webhook Payload Models
# =============================================================================

class VerificationParams(BaseModel):
    """Query parameters of the platform's subscription handshake."""
    mode: Literal["subscribe"] = Field(..., alias="hub.mode")
    verify_token: str = Field(..., alias="hub.verify_token")
    challenge: str = Field(..., alias="hub.challenge")


class InboundText(BaseModel):
    body: str


class InboundMessage(BaseModel):
    """A single message inside a change value."""
    id: str
    # 'from' is a reserved word in Python, so we use alias
    from_number: str = Field(..., alias="from")
    timestamp: str
    text: Optional[InboundText] = None
    type: str

    model_config = ConfigDict(populate_by_name=True)


class ChangeMetadata(BaseModel):
    display_phone_number: str


class ChangeValue(BaseModel):
    messages: Optional[list[InboundMessage]] = None
    metadata: ChangeMetadata


class Change(BaseModel):
    value: ChangeValue


class Entry(BaseModel):
    changes: list[Change]


class WebhookPayload(BaseModel):
    """
    Delivery notification body.

    Every message of every change of every entry becomes one inbound unit,
    addressed to the change's display phone number.
    """
    entry: list[Entry]

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "entry": [{
                        "changes": [{
                            "value": {
                                "messages": [{
                                    "id": "wamid.1",
                                    "from": "+14155550100",
                                    "timestamp": "1736935200",
                                    "text": {"body": "/help"},
                                    "type": "text",
                                }],
                                "metadata": {"display_phone_number": "15550001111"},
                            }
                        }]
                    }]
                }
            ]
        }
    }


class InboundUnit(BaseModel):
    """One normalized message event, ready for the message processor."""
    external_id: str
    sender: str
    recipient: str
    body: Optional[str] = None
    kind: str = "text"
    external_timestamp: Optional[str] = None


# =============================================================================
# Store Records
# =============================================================================

class MessageRecord(CamelModel):
    id: str
    whatsapp_message_id: str
    from_number: str
    to_number: str
    message_text: Optional[str] = None
    message_type: str = "text"
    timestamp: datetime
    status: MessageStatus = "received"
    response_time: Optional[int] = None
    is_command: bool = False
    command_name: Optional[str] = None
    bot_response: Optional[str] = None
    message_metadata: dict[str, Any] = Field(default_factory=dict, alias="metadata")


class MessageCreate(CamelModel):
    whatsapp_message_id: str
    from_number: str
    to_number: str
    message_text: Optional[str] = None
    message_type: str = "text"
    status: MessageStatus = "received"
    is_command: bool = False
    command_name: Optional[str] = None
    message_metadata: dict[str, Any] = Field(default_factory=dict, alias="metadata")


class ConversationRecord(CamelModel):
    id: str
    phone_number: str
    display_name: Optional[str] = None
    last_message_at: datetime
    message_count: int = 0
    is_active: bool = True
    last_command: Optional[str] = None
    conversation_state: ConversationState = "active"


class ConversationCreate(CamelModel):
    phone_number: str
    display_name: Optional[str] = None
    message_count: int = 0
    is_active: bool = True
    last_command: Optional[str] = None
    conversation_state: ConversationState = "active"


class ConversationUpdate(CamelModel):
    """Fields left as None keep their stored value."""
    display_name: Optional[str] = None
    message_count: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    last_command: Optional[str] = None
    conversation_state: Optional[ConversationState] = None


class TemplateRecord(CamelModel):
    id: str
    name: str
    category: str
    language: str = "en_US"
    status: str = "pending"
    components: Any
    usage_count: int = 0
    created_at: datetime
    updated_at: datetime


class TemplateCreate(CamelModel):
    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    language: str = "en_US"
    status: str = "pending"
    components: Any = Field(...)


class TemplateUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1)
    language: Optional[str] = None
    status: Optional[str] = None
    components: Optional[Any] = None


class BotConfigRecord(CamelModel):
    id: str
    key: str
    value: str
    description: Optional[str] = None
    is_active: bool = True
    updated_at: datetime


class BotConfigCreate(CamelModel):
    key: str = Field(..., min_length=1)
    value: str
    description: Optional[str] = None
    is_active: bool = True


class BotConfigUpdate(CamelModel):
    value: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class WebhookLogRecord(CamelModel):
    id: str
    webhook_url: str
    method: str
    headers: Optional[dict[str, Any]] = None
    body: Optional[Any] = None
    response_status: Optional[int] = None
    response_time: Optional[int] = None
    timestamp: datetime
    is_successful: bool = False
    error_message: Optional[str] = None


class WebhookLogCreate(CamelModel):
    webhook_url: str
    method: str
    headers: Optional[dict[str, Any]] = None
    body: Optional[Any] = None
    response_status: Optional[int] = None
    response_time: Optional[int] = None
    is_successful: bool = False
    error_message: Optional[str] = None


class AnalyticsRecord(CamelModel):
    id: str
    date: str
    messages_received: int = 0
    messages_responded: int = 0
    active_users: int = 0
    avg_response_time: int = 0
    command_usage: dict[str, int] = Field(default_factory=dict)
    popular_commands: list[str] = Field(default_factory=list)


class AnalyticsCreate(CamelModel):
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    messages_received: int = 0
    messages_responded: int = 0
    active_users: int = 0
    avg_response_time: int = 0
    command_usage: dict[str, int] = Field(default_factory=dict)
    popular_commands: list[str] = Field(default_factory=list)


# =============================================================================
# API Request/Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for an acknowledged webhook delivery."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: Any = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class StatusResponse(BaseModel):
    status: str


class CommandStat(CamelModel):
    name: str = Field(..., description="Command with leading slash, e.g. /help")
    usage: int = Field(..., ge=0)
    description: str


class DashboardStats(CamelModel):
    """
    Dashboard snapshot.

    - messages_today: messages received on the current UTC calendar day
    - active_users: active conversations seen in the trailing window
    - response_rate: percentage of today's messages answered, one decimal
    - avg_response_time: mean latency of today's answers in ms
    - recent_messages: ten newest messages overall
    - command_stats: today's commands in first-seen order, at most five
    """
    messages_today: int = Field(..., ge=0)
    active_users: int = Field(..., ge=0)
    response_rate: float = Field(..., ge=0)
    avg_response_time: int = Field(..., ge=0)
    recent_messages: list[MessageRecord] = Field(default_factory=list)
    command_stats: list[CommandStat] = Field(default_factory=list)


class BotTestRequest(CamelModel):
    """Body of the manual pipeline test endpoint."""
    message: Optional[str] = None
    phone_number: Optional[str] = None


class BroadcastRequest(CamelModel):
    message: Optional[str] = None
    template_id: Optional[str] = None


class BroadcastResponse(CamelModel):
    status: str
    recipient_count: int = Field(..., ge=0)
