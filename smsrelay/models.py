"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, String, Text

from smsrelay.storage import Base


class Profile(Base):
    """
    Customer or staff profile.

    Consulted for bearer-token authentication, admin role checks and
    phone-number lookups. Not owned by the SMS core.
    """
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True, index=True)
    sms_consent = Column(Boolean, nullable=False, default=False)
    role = Column(String, nullable=False, default="customer")
    access_token = Column(String, nullable=True, unique=True, index=True)


class Conversation(Base):
    """
    Message thread with one phone number.

    Table: sms_conversations
    Unique: customer_phone (at most one conversation per number)
    """
    __tablename__ = "sms_conversations"

    id = Column(String, primary_key=True)
    customer_phone = Column(String, nullable=False, unique=True, index=True)
    customer_id = Column(String, nullable=True)  # weak reference to profiles.id
    status = Column(String, nullable=False, default="active")
    created_at = Column(String, nullable=False)
    last_message_at = Column(String, nullable=True)


class Message(Base):
    """
    Outbound or inbound SMS.

    Created on every send attempt (failed ones included) and never deleted.
    Status fields are only mutated through storage.update_message_status.
    """
    __tablename__ = "sms_messages"

    id = Column(String, primary_key=True)
    conversation_id = Column(
        String, ForeignKey("sms_conversations.id"), nullable=False, index=True
    )
    gateway_message_id = Column(String, nullable=True, unique=True, index=True)
    direction = Column(String, nullable=False)
    from_number = Column(String, nullable=False)
    to_number = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    status = Column(String, nullable=False, index=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    status_check_count = Column(Integer, nullable=False, default=0)
    batch_id = Column(String, nullable=True, index=True)
    sent_by = Column(String, nullable=True)
    created_at = Column(String, nullable=False, index=True)
    status_updated_at = Column(String, nullable=True)
    last_status_check_at = Column(String, nullable=True)
    final_status_at = Column(String, nullable=True)


class OptOut(Base):
    """Phone number that must never receive outbound messages."""
    __tablename__ = "sms_opt_outs"

    phone_number = Column(String, primary_key=True)
    method = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)


class Campaign(Base):
    """
    Stored message body plus a fixed recipient list, dispatched as one batch.

    Status moves draft -> sent | failed exactly once per dispatch attempt.
    """
    __tablename__ = "sms_campaigns"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    recipients = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default="draft")
    sent_at = Column(String, nullable=True)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    gateway_response = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
