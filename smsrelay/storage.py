import logging
import uuid
from datetime import datetime, timezone
from typing import Generator, Iterable, List, Optional

from sqlalchemy import case, create_engine, func, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from smsrelay.config import settings
from smsrelay.errors import PersistenceError
from smsrelay.gateway import TERMINAL_STATUSES, is_terminal

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

# Tables the readiness probe expects to find
REQUIRED_TABLES = ("sms_conversations", "sms_messages", "sms_opt_outs", "sms_campaigns", "profiles")

# Hard ceiling on rows a single reconciliation pass may load
MAX_STATUS_CHECK_BATCH = 500


def utc_now() -> str:
    """Current server time as ISO-8601 UTC with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def new_id() -> str:
    return str(uuid.uuid4())


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from smsrelay import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every required table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            existing = set(inspect(db.get_bind()).get_table_names())
            missing = [name for name in REQUIRED_TABLES if name not in existing]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Profile Repository Functions
# =============================================================================

def get_profile_by_token(db: Session, token: str):
    from smsrelay.models import Profile

    return db.query(Profile).filter(Profile.access_token == token).first()


def get_profile_by_phone(db: Session, phone: str):
    from smsrelay.models import Profile

    return db.query(Profile).filter(Profile.phone == phone).first()


def get_profiles_by_ids(db: Session, profile_ids: Iterable[str]) -> list:
    from smsrelay.models import Profile

    return db.query(Profile).filter(Profile.id.in_(list(profile_ids))).all()


def get_consenting_profiles(db: Session, excluded_phones: Iterable[str]) -> list:
    """
    Profiles with SMS consent and a phone number, minus excluded phones.
    Ordered by last name.
    """
    from smsrelay.models import Profile

    query = db.query(Profile).filter(
        Profile.sms_consent.is_(True),
        Profile.phone.isnot(None),
    )
    excluded = list(excluded_phones)
    if excluded:
        query = query.filter(Profile.phone.notin_(excluded))
    return query.order_by(Profile.last_name.asc()).all()


def clear_sms_consent(db: Session, phone: str) -> int:
    from smsrelay.models import Profile

    updated = (
        db.query(Profile)
        .filter(Profile.phone == phone)
        .update({Profile.sms_consent: False}, synchronize_session=False)
    )
    db.commit()
    return updated


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_conversation_by_phone(db: Session, phone: str):
    from smsrelay.models import Conversation

    return db.query(Conversation).filter(Conversation.customer_phone == phone).first()


def get_conversation(db: Session, conversation_id: str):
    from smsrelay.models import Conversation

    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def list_conversations(db: Session, status: Optional[str] = "active") -> list:
    """Conversations with the most recent activity first; never-used threads last."""
    from smsrelay.models import Conversation

    query = db.query(Conversation)
    if status:
        query = query.filter(Conversation.status == status)
    return query.order_by(
        Conversation.last_message_at.desc().nulls_last(),
        Conversation.created_at.desc(),
    ).all()


def insert_conversation(db: Session, phone: str, customer_id: Optional[str] = None):
    """
    Insert a new active conversation.

    Raises:
        IntegrityError: a conversation for this phone already exists.
            The session is rolled back before the error propagates.
    """
    from smsrelay.models import Conversation

    conversation = Conversation(
        id=new_id(),
        customer_phone=phone,
        customer_id=customer_id,
        status="active",
        created_at=utc_now(),
    )
    db.add(conversation)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info(f"Conversation created: id={conversation.id}, phone={phone}")
    return conversation


# =============================================================================
# Opt-out Repository Functions
# =============================================================================

def is_opted_out(db: Session, phone: str) -> bool:
    from smsrelay.models import OptOut

    return db.query(OptOut.phone_number).filter(OptOut.phone_number == phone).first() is not None


def get_opted_out_phones(db: Session) -> List[str]:
    from smsrelay.models import OptOut

    return [row.phone_number for row in db.query(OptOut.phone_number).all()]


def list_opt_outs(db: Session) -> list:
    from smsrelay.models import OptOut

    return db.query(OptOut).order_by(OptOut.created_at.desc(), OptOut.phone_number.asc()).all()


def upsert_opt_out(db: Session, phone: str, method: str, notes: Optional[str] = None):
    """Create or refresh the opt-out record for a phone number."""
    from smsrelay.models import OptOut

    opt_out = db.get(OptOut, phone)
    if opt_out is None:
        opt_out = OptOut(phone_number=phone, method=method, notes=notes, created_at=utc_now())
        db.add(opt_out)
    else:
        opt_out.method = method
        opt_out.notes = notes
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to save opt-out: {e}")
    return opt_out


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    conversation_id: str,
    direction: str,
    from_number: str,
    to_number: str,
    body: str,
    status: str,
    gateway_message_id: Optional[str] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    batch_id: Optional[str] = None,
    sent_by: Optional[str] = None,
):
    """
    Insert a message row and bump the owning conversation's activity stamp.

    Raises:
        PersistenceError: the row could not be written.
    """
    from smsrelay.models import Conversation, Message

    now = utc_now()
    message = Message(
        id=new_id(),
        conversation_id=conversation_id,
        gateway_message_id=gateway_message_id,
        direction=direction,
        from_number=from_number,
        to_number=to_number,
        body=body,
        status=status,
        error_code=error_code,
        error_message=error_message,
        status_check_count=0,
        batch_id=batch_id,
        sent_by=sent_by,
        created_at=now,
        status_updated_at=now,
        final_status_at=now if is_terminal(status) else None,
    )
    try:
        db.add(message)
        db.query(Conversation).filter(Conversation.id == conversation_id).update(
            {Conversation.last_message_at: now}, synchronize_session=False
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save message for conversation {conversation_id}: {e}")
        raise PersistenceError(f"Failed to save message: {e}")

    logger.info(f"Message saved: id={message.id}, status={status}, gateway_id={gateway_message_id}")
    return message


def get_message_by_id(db: Session, message_id: str):
    from smsrelay.models import Message

    return db.query(Message).filter(Message.id == message_id).first()


def get_message_by_gateway_id(db: Session, gateway_message_id: str):
    from smsrelay.models import Message

    return db.query(Message).filter(Message.gateway_message_id == gateway_message_id).first()


def get_messages_by_conversation(db: Session, conversation_id: str) -> list:
    """Every message of a thread, oldest first."""
    from smsrelay.models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def get_messages_by_batch(db: Session, batch_id: str, limit: int = 100) -> list:
    from smsrelay.models import Message

    return (
        db.query(Message)
        .filter(Message.batch_id == batch_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(limit)
        .all()
    )


def get_messages_needing_status_check(db: Session, limit: int, max_checks: int) -> list:
    """
    Outbound messages still worth polling, oldest first.

    A message qualifies while it has a gateway id, its status is not
    terminal and it has been checked fewer than max_checks times.
    """
    from smsrelay.models import Message

    limit = max(1, min(limit, MAX_STATUS_CHECK_BATCH))
    return (
        db.query(Message)
        .filter(
            Message.direction == "outbound",
            Message.gateway_message_id.isnot(None),
            Message.status.notin_(sorted(TERMINAL_STATUSES)),
            Message.status_check_count < max_checks,
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(limit)
        .all()
    )


def update_message_status(
    db: Session,
    message_id: str,
    new_status: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    """
    Record one status check against a message in a single UPDATE.

    Always increments status_check_count and stamps last_status_check_at.
    Error fields and status_updated_at only move when the status changes;
    final_status_at is set the first time a terminal status is stored.

    Returns:
        True if a row was updated.

    Raises:
        PersistenceError: the update failed.
    """
    from smsrelay.models import Message

    now = utc_now()
    changed = Message.status != new_status
    values = {
        Message.status: new_status,
        Message.status_check_count: Message.status_check_count + 1,
        Message.last_status_check_at: now,
        Message.status_updated_at: case((changed, now), else_=Message.status_updated_at),
        Message.error_code: case((changed, error_code), else_=Message.error_code),
        Message.error_message: case((changed, error_message), else_=Message.error_message),
    }
    if is_terminal(new_status):
        values[Message.final_status_at] = func.coalesce(Message.final_status_at, now)

    try:
        updated = (
            db.query(Message)
            .filter(Message.id == message_id)
            .update(values, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update status for message {message_id}: {e}")
        raise PersistenceError("Failed to update database")

    logger.debug(f"Status check recorded: message={message_id}, status={new_status}")
    return updated > 0


# =============================================================================
# Campaign Repository Functions
# =============================================================================

def create_campaign(db: Session, message: str, recipients: List[str], name: Optional[str] = None):
    from smsrelay.models import Campaign

    campaign = Campaign(
        id=new_id(),
        name=name,
        message=message,
        recipients=list(recipients),
        status="draft",
        sent_count=0,
        failed_count=0,
        created_at=utc_now(),
    )
    try:
        db.add(campaign)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to save campaign: {e}")
    return campaign


def get_campaign(db: Session, campaign_id: str):
    from smsrelay.models import Campaign

    return db.query(Campaign).filter(Campaign.id == campaign_id).first()


def list_campaigns(db: Session) -> list:
    from smsrelay.models import Campaign

    return db.query(Campaign).order_by(Campaign.created_at.desc()).all()


def mark_campaign_sent(db: Session, campaign_id: str, sent_count: int, gateway_response) -> None:
    from smsrelay.models import Campaign

    _update_campaign(db, campaign_id, {
        Campaign.status: "sent",
        Campaign.sent_at: utc_now(),
        Campaign.sent_count: sent_count,
        Campaign.gateway_response: gateway_response,
    })


def mark_campaign_failed(db: Session, campaign_id: str, error_message: str, failed_count: int = 1) -> None:
    from smsrelay.models import Campaign

    _update_campaign(db, campaign_id, {
        Campaign.status: "failed",
        Campaign.error_message: error_message,
        Campaign.failed_count: failed_count,
    })


def _update_campaign(db: Session, campaign_id: str, values: dict) -> None:
    from smsrelay.models import Campaign

    try:
        db.query(Campaign).filter(Campaign.id == campaign_id).update(
            values, synchronize_session=False
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update campaign {campaign_id}: {e}")
        raise PersistenceError(f"Failed to update campaign: {e}")
