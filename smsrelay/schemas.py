"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendSmsRequest(BaseModel):
    """
    Body of POST /sms/send.

    Fields are optional here so that missing values reach the send
    orchestrator, which owns the error messages for them.
    """
    to: Optional[str] = Field(None, description="Destination in E.164 format")
    body: Optional[str] = Field(None, description="Message text")
    from_number: Optional[str] = Field(
        None,
        alias="fromNumber",
        description="Sender to record if the gateway does not echo one"
    )

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {"to": "+15551234567", "body": "Your order is ready"}
            ]
        }
    }


class BatchSmsRequest(BaseModel):
    """Body of POST /sms/batch."""
    user_ids: Optional[list[str]] = Field(None, alias="userIds")
    message_template: Optional[str] = Field(
        None,
        alias="messageTemplate",
        description="Message text; [First Name] is replaced per recipient"
    )

    model_config = {"populate_by_name": True}


class CampaignCreateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    message: str = Field(..., min_length=1, description="Message body sent to every recipient")
    recipients: list[str] = Field(default_factory=list, description="Destination numbers")


class DispatchCampaignRequest(BaseModel):
    device_id: str = Field(..., min_length=1, alias="deviceId", description="Gateway device to send from")

    model_config = {"populate_by_name": True}


class OptOutRequest(BaseModel):
    """Body of POST /sms/opt-outs."""
    phone_number: Optional[str] = Field(None, alias="phoneNumber", description="Number to block, E.164")
    notes: Optional[str] = Field(None, max_length=500)

    model_config = {"populate_by_name": True}


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class MessageResponse(BaseModel):
    """A stored SMS row."""
    id: str
    conversation_id: str
    gateway_message_id: Optional[str] = None
    direction: str
    from_number: str
    to_number: str
    body: str
    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    status_check_count: int = 0
    batch_id: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class SendSmsResponse(BaseModel):
    success: bool = True
    message: MessageResponse
    gateway_sid: Optional[str] = Field(None, serialization_alias="gatewaySid")


class CheckStatusResponse(BaseModel):
    """
    Live statuses for the selected messages.

    Each entry is either a full status payload or {messageId, error}.
    """
    success: bool = True
    message: str
    statuses: list[dict[str, Any]] = Field(default_factory=list)


class StatusUpdateResultResponse(BaseModel):
    messageId: str
    gatewaySid: Optional[str] = None
    oldStatus: str
    newStatus: str
    updated: bool
    error: Optional[str] = None


class PollStatusResponse(BaseModel):
    success: bool = True
    message: str
    checked: int = Field(..., ge=0)
    updated: int = Field(..., ge=0)
    results: list[StatusUpdateResultResponse] = Field(default_factory=list)


class BatchSummary(BaseModel):
    total: int = Field(..., ge=0)
    successful: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    skipped: int = Field(..., ge=0)


class BatchSmsResponse(BaseModel):
    success: bool = True
    batchId: str
    summary: BatchSummary
    results: list[dict[str, Any]] = Field(default_factory=list)
    message: str


class EligibleUser(BaseModel):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: str
    email: Optional[str] = None

    model_config = {"from_attributes": True}


class EligibleUsersResponse(BaseModel):
    success: bool = True
    count: int = Field(..., ge=0)
    users: list[EligibleUser] = Field(default_factory=list)


class CampaignResponse(BaseModel):
    id: str
    name: Optional[str] = None
    message: str
    recipients: list[str] = Field(default_factory=list)
    status: str
    sent_at: Optional[str] = None
    sent_count: int = 0
    failed_count: int = 0
    gateway_response: Optional[Any] = None
    error_message: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class CampaignListResponse(BaseModel):
    data: list[CampaignResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class DispatchCampaignResponse(BaseModel):
    success: bool = True
    message: str
    result: Optional[Any] = None


class OptOutResponse(BaseModel):
    phone_number: str
    method: Optional[str] = None
    notes: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class OptOutListResponse(BaseModel):
    data: list[OptOutResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ConversationResponse(BaseModel):
    id: str
    customer_phone: str
    customer_id: Optional[str] = None
    status: str
    created_at: str
    last_message_at: Optional[str] = None

    model_config = {"from_attributes": True}


class ConversationListResponse(BaseModel):
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ConversationMessagesResponse(BaseModel):
    conversation: ConversationResponse
    messages: list[MessageResponse] = Field(default_factory=list)
