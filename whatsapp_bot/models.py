"""
SQLAlchemy ORM models for the bot's tables.

This module contains table definitions only. Storage code converts rows into
the pydantic records from schemas.py before handing them to callers, so no ORM
instance ever leaves a session.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class Message(Base):
    """
    Inbound message plus the bot's answer to it.

    Table: messages
    Primary Key: id (generated UUID)
    Unique: whatsapp_message_id (platform message id)
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    whatsapp_message_id = Column(String, nullable=False, unique=True, index=True)
    from_number = Column(String, nullable=False, index=True)
    to_number = Column(String, nullable=False)
    message_text = Column(Text, nullable=True)
    message_type = Column(String, nullable=False, default="text")
    timestamp = Column(DateTime, nullable=False, index=True)  # server receipt time, naive UTC
    status = Column(String, nullable=False, default="received")
    response_time = Column(Integer, nullable=True)  # milliseconds
    is_command = Column(Boolean, nullable=False, default=False)
    command_name = Column(String, nullable=True)
    bot_response = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    message_metadata = Column("metadata", JSON, nullable=True)
    # insertion order, breaks timestamp ties
    seq = Column(Integer, nullable=False, index=True)


class Conversation(Base):
    """
    Per-sender conversation state.

    Table: conversations
    Primary Key: phone_number
    """
    __tablename__ = "conversations"

    phone_number = Column(String, primary_key=True)
    id = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=True)
    last_message_at = Column(DateTime, nullable=False, index=True)
    message_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    last_command = Column(String, nullable=True)
    conversation_state = Column(String, nullable=False, default="active")


class Template(Base):
    """Message template managed from the admin UI."""
    __tablename__ = "templates"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    category = Column(String, nullable=False)
    language = Column(String, nullable=False, default="en_US")
    status = Column(String, nullable=False, default="pending")
    components = Column(JSON, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class BotConfig(Base):
    """
    Operator-editable response text.

    Table: bot_config
    Primary Key: key
    """
    __tablename__ = "bot_config"

    key = Column(String, primary_key=True)
    id = Column(String, nullable=False, unique=True)
    value = Column(Text, nullable=False)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False)


class WebhookLog(Base):
    """Append-only record of webhook traffic."""
    __tablename__ = "webhook_logs"

    id = Column(String, primary_key=True)
    webhook_url = Column(String, nullable=False)
    method = Column(String, nullable=False)
    headers = Column(JSON, nullable=True)
    body = Column(JSON, nullable=True)
    response_status = Column(Integer, nullable=True)
    response_time = Column(Integer, nullable=True)  # milliseconds
    timestamp = Column(DateTime, nullable=False, index=True)
    is_successful = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    seq = Column(Integer, nullable=False, index=True)


class Analytics(Base):
    """
    Daily rollup.

    Table: analytics
    Primary Key: date (YYYY-MM-DD)
    """
    __tablename__ = "analytics"

    date = Column(String, primary_key=True)
    id = Column(String, nullable=False, unique=True)
    messages_received = Column(Integer, nullable=False, default=0)
    messages_responded = Column(Integer, nullable=False, default=0)
    active_users = Column(Integer, nullable=False, default=0)
    avg_response_time = Column(Integer, nullable=False, default=0)
    command_usage = Column(JSON, nullable=True)
    popular_commands = Column(JSON, nullable=True)
