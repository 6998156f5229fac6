import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Form, Header, Query, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from smsrelay import campaigns, compliance, conversations, inbound, reconciler, sender
from smsrelay.auth import require_admin
from smsrelay.config import settings
from smsrelay.errors import InvalidRequestError, add_exception_handlers, error_response
from smsrelay.gateway import TextBeeGateway, TwilioGateway
from smsrelay.logging_utils import RequestLoggingMiddleware, log_sms_data, setup_logging
from smsrelay.metrics import get_metrics, get_metrics_content_type
from smsrelay.models import Profile
from smsrelay.schemas import (
    BatchSmsRequest,
    BatchSmsResponse,
    CampaignCreateRequest,
    CampaignListResponse,
    CampaignResponse,
    CheckStatusResponse,
    ConversationListResponse,
    ConversationMessagesResponse,
    ConversationResponse,
    DispatchCampaignRequest,
    DispatchCampaignResponse,
    EligibleUser,
    EligibleUsersResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    OptOutListResponse,
    OptOutRequest,
    OptOutResponse,
    PollStatusResponse,
    SendSmsRequest,
    SendSmsResponse,
    StatusUpdateResultResponse,
)
from smsrelay.storage import check_db_health, get_db, init_db
from smsrelay.utils import verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Client-Info, Apikey",
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    403: {"model": ErrorResponse, "description": "Caller is not an admin"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    if not settings.twilio_configured:
        logger.warning("Twilio credentials not configured; SMS routes will fail")
    yield


app = FastAPI(
    title="SMS Relay",
    description="SMS delivery and status reconciliation service",
    version="1.0.0",
    lifespan=lifespan,
)

add_exception_handlers(app, response_headers=CORS_HEADERS)
app.add_middleware(RequestLoggingMiddleware)


@app.middleware("http")
async def cors_headers(request: Request, call_next):
    """Answer pre-flight requests directly and stamp CORS headers on every response."""
    if request.method == "OPTIONS":
        return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


# =============================================================================
# Dependencies
# =============================================================================

def get_sms_gateway() -> TwilioGateway:
    """Twilio client built from settings; credentials are checked when it is first used."""
    return TwilioGateway(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        messaging_service_sid=settings.TWILIO_MESSAGING_SERVICE_SID,
        base_url=settings.TWILIO_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )


def get_campaign_gateway() -> TextBeeGateway:
    return TextBeeGateway(
        api_key=settings.TEXTBEE_API_KEY,
        base_url=settings.TEXTBEE_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )


async def read_json_body(request: Request) -> dict:
    """Parse the raw request body as a JSON object."""
    raw_body = await request.body()
    try:
        data = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError as e:
        raise InvalidRequestError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return data


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. Twilio credentials are configured

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.twilio_configured:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason=TwilioGateway.NOT_CONFIGURED_MESSAGE)

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# SMS Routes
# =============================================================================

@app.post("/sms/send", response_model=SendSmsResponse, responses=ERROR_RESPONSES)
async def send_sms(
    request: Request,
    caller: Profile = Depends(require_admin),
    gateway: TwilioGateway = Depends(get_sms_gateway),
    db: Session = Depends(get_db),
) -> SendSmsResponse:
    """
    Send one SMS to an E.164 number.

    Body:
        - to: destination, E.164 (e.g. +15551234567)
        - body: message text
        - fromNumber: optional sender to record if the gateway echoes none
    """
    data = await read_json_body(request)
    try:
        payload = SendSmsRequest.model_validate(data)
    except ValidationError:
        raise InvalidRequestError(sender.MISSING_FIELDS_MESSAGE)

    log_sms_data(request, to=payload.to)
    message = await sender.send_sms(
        db,
        gateway,
        caller,
        to=payload.to,
        body=payload.body,
        from_hint=payload.from_number,
    )
    log_sms_data(request, message_id=message.id, gateway_sid=message.gateway_message_id)

    return SendSmsResponse(
        message=MessageResponse.model_validate(message),
        gateway_sid=message.gateway_message_id,
    )


@app.get("/sms/status", response_model=CheckStatusResponse, responses=ERROR_RESPONSES)
async def check_message_status(
    sid: Annotated[Optional[str], Query(description="Gateway message SID")] = None,
    message_id: Annotated[Optional[str], Query(alias="messageId", description="Stored message id")] = None,
    batch_id: Annotated[Optional[str], Query(alias="batchId", description="Batch id (up to 100 messages)")] = None,
    caller: Profile = Depends(require_admin),
    gateway: TwilioGateway = Depends(get_sms_gateway),
    db: Session = Depends(get_db),
) -> CheckStatusResponse:
    """
    Fetch live gateway status for one message (sid or messageId) or a batch.
    """
    statuses = await reconciler.check_messages(
        db,
        gateway,
        sid=sid,
        message_id=message_id,
        batch_id=batch_id,
        pause=settings.STATUS_POLL_DELAY_SECONDS,
    )
    if not statuses:
        return CheckStatusResponse(message="No messages found to check", statuses=[])

    return CheckStatusResponse(
        message=f"Status retrieved for {len(statuses)} message(s)",
        statuses=statuses,
    )


@app.get("/sms/poll", response_model=PollStatusResponse, responses=ERROR_RESPONSES)
async def poll_message_status(
    request: Request,
    limit: Annotated[Optional[int], Query(description="Messages to check (default 100, max 500)")] = None,
    caller: Profile = Depends(require_admin),
    gateway: TwilioGateway = Depends(get_sms_gateway),
    db: Session = Depends(get_db),
) -> PollStatusResponse:
    """
    Reconcile pending outbound messages against the gateway.

    Intended to be invoked on a schedule by an external caller.
    """
    outcome = await reconciler.reconcile(
        db,
        gateway,
        limit=limit,
        max_checks=settings.STATUS_MAX_CHECKS,
        pause=settings.STATUS_POLL_DELAY_SECONDS,
    )
    log_sms_data(request, checked=outcome.checked, updated=outcome.updated)

    return PollStatusResponse(
        message=outcome.summary,
        checked=outcome.checked,
        updated=outcome.updated,
        results=[StatusUpdateResultResponse(**r) for r in outcome.to_dict()["results"]],
    )


@app.post("/sms/batch", response_model=BatchSmsResponse, responses=ERROR_RESPONSES)
async def send_batch_sms(
    request: Request,
    caller: Profile = Depends(require_admin),
    gateway: TwilioGateway = Depends(get_sms_gateway),
    db: Session = Depends(get_db),
) -> BatchSmsResponse:
    """
    Send a personalized template to a list of profiles.

    Body:
        - userIds: profile ids (1 to 1000)
        - messageTemplate: text; [First Name] is personalized per recipient
    """
    data = await read_json_body(request)
    try:
        payload = BatchSmsRequest.model_validate(data)
    except ValidationError:
        raise InvalidRequestError("userIds array is required and cannot be empty")

    outcome = await sender.send_batch_sms(
        db,
        gateway,
        caller,
        user_ids=payload.user_ids,
        message_template=payload.message_template,
        pause=settings.BATCH_SEND_DELAY_SECONDS,
        max_recipients=settings.BATCH_MAX_RECIPIENTS,
    )
    summary = outcome["summary"]
    log_sms_data(request, batch_id=outcome["batchId"], **summary)

    return BatchSmsResponse(
        batchId=outcome["batchId"],
        summary=summary,
        results=outcome["results"],
        message=(
            f"Batch SMS campaign completed. {summary['successful']} sent, "
            f"{summary['failed']} failed, {summary['skipped']} skipped."
        ),
    )


@app.get("/sms/eligible-users", response_model=EligibleUsersResponse, responses=ERROR_RESPONSES)
async def eligible_users(
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> EligibleUsersResponse:
    """Profiles that may receive marketing SMS (consented and not opted out)."""
    users = [EligibleUser.model_validate(p) for p in compliance.get_eligible_profiles(db)]
    return EligibleUsersResponse(count=len(users), users=users)


@app.get("/sms/opt-outs", response_model=OptOutListResponse, responses=ERROR_RESPONSES)
async def list_opt_outs(
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OptOutListResponse:
    """Opt-out registry, newest first."""
    data = [OptOutResponse.model_validate(o) for o in compliance.list_opt_outs(db)]
    return OptOutListResponse(data=data, total=len(data))


@app.post("/sms/opt-outs", response_model=OptOutResponse, status_code=201, responses=ERROR_RESPONSES)
async def add_opt_out(
    request: Request,
    payload: OptOutRequest,
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OptOutResponse:
    """
    Block a number from all future sends and withdraw its SMS consent.

    Body:
        - phoneNumber: E.164 number
        - notes: optional free text
    """
    log_sms_data(request, to=payload.phone_number)
    opt_out = compliance.add_opt_out(db, payload.phone_number, notes=payload.notes)
    return OptOutResponse.model_validate(opt_out)


@app.get("/sms/conversations", response_model=ConversationListResponse, responses=ERROR_RESPONSES)
async def list_conversations(
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    """Active conversations, most recent activity first."""
    data = [ConversationResponse.model_validate(c) for c in conversations.list_conversations(db)]
    return ConversationListResponse(data=data, total=len(data))


@app.get(
    "/sms/conversations/{conversation_id}/messages",
    response_model=ConversationMessagesResponse,
    responses=ERROR_RESPONSES,
)
async def get_conversation_messages(
    conversation_id: str,
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ConversationMessagesResponse:
    conversation, messages = conversations.get_conversation_messages(db, conversation_id)
    return ConversationMessagesResponse(
        conversation=ConversationResponse.model_validate(conversation),
        messages=[MessageResponse.model_validate(m) for m in messages],
    )


# =============================================================================
# Campaign Routes
# =============================================================================

@app.post("/campaigns", response_model=CampaignResponse, status_code=201, responses=ERROR_RESPONSES)
async def create_campaign(
    payload: CampaignCreateRequest,
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> CampaignResponse:
    campaign = campaigns.create_campaign(
        db, message=payload.message, recipients=payload.recipients, name=payload.name
    )
    return CampaignResponse.model_validate(campaign)


@app.get("/campaigns", response_model=CampaignListResponse, responses=ERROR_RESPONSES)
async def list_campaigns(
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> CampaignListResponse:
    data = [CampaignResponse.model_validate(c) for c in campaigns.list_campaigns(db)]
    return CampaignListResponse(data=data, total=len(data))


@app.get("/campaigns/{campaign_id}", response_model=CampaignResponse, responses=ERROR_RESPONSES)
async def get_campaign(
    campaign_id: str,
    caller: Profile = Depends(require_admin),
    db: Session = Depends(get_db),
) -> CampaignResponse:
    return CampaignResponse.model_validate(campaigns.get_campaign(db, campaign_id))


@app.post(
    "/campaigns/{campaign_id}/dispatch",
    response_model=DispatchCampaignResponse,
    responses=ERROR_RESPONSES,
)
async def dispatch_campaign(
    request: Request,
    campaign_id: str,
    payload: DispatchCampaignRequest,
    caller: Profile = Depends(require_admin),
    gateway: TextBeeGateway = Depends(get_campaign_gateway),
    db: Session = Depends(get_db),
) -> DispatchCampaignResponse:
    """Send a stored campaign to all of its recipients in one gateway call."""
    log_sms_data(request, campaign_id=campaign_id, device_id=payload.device_id)
    result = await campaigns.dispatch_campaign(db, gateway, campaign_id, payload.device_id)
    return DispatchCampaignResponse(message="Campaign sent", result=result)


# =============================================================================
# Inbound Webhook Route
# =============================================================================

@app.post("/webhooks/sms")
async def sms_webhook(
    request: Request,
    From: Optional[str] = Form(None),
    To: Optional[str] = Form(None),
    Body: Optional[str] = Form(None),
    MessageSid: Optional[str] = Form(None),
    SmsStatus: Optional[str] = Form(None),
    x_twilio_signature: Annotated[Optional[str], Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
) -> Response:
    """
    Twilio inbound SMS webhook.

    STOP-type keywords add the sender to the opt-out list. The reply is
    always an empty TwiML document so Twilio sends nothing back.
    """
    twiml = Response(content=inbound.EMPTY_TWIML, media_type="text/xml")

    if settings.VALIDATE_WEBHOOK_SIGNATURE and settings.TWILIO_AUTH_TOKEN:
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
        if not x_twilio_signature or not verify_twilio_signature(
            str(request.url), params, x_twilio_signature, settings.TWILIO_AUTH_TOKEN
        ):
            logger.error("Invalid Twilio signature on inbound webhook")
            log_sms_data(request, result="invalid_signature")
            return error_response(status.HTTP_403_FORBIDDEN, "Invalid signature")

    if not From or not To or not Body or not MessageSid:
        logger.error("Missing required webhook fields")
        log_sms_data(request, result="missing_fields")
        return twiml

    try:
        outcome = inbound.handle_inbound_sms(
            db,
            from_number=From,
            to_number=To,
            body=Body,
            message_sid=MessageSid,
            sms_status=SmsStatus,
        )
    except Exception as e:
        # Twilio retries non-2xx replies; the failure is logged and acknowledged
        logger.error(f"Failed to process inbound SMS {MessageSid}: {e}", exc_info=True)
        log_sms_data(request, message_sid=MessageSid, result="error")
        return twiml

    log_sms_data(
        request,
        message_sid=MessageSid,
        result="duplicate" if outcome["duplicate"] else "created",
        opted_out=outcome["opted_out"],
    )
    return twiml


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
