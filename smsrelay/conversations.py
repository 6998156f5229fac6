import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from smsrelay import storage
from smsrelay.errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


def resolve_conversation(db: Session, phone: str) -> str:
    """
    Find or create the conversation for a phone number.

    New conversations are linked to the profile carrying that number, if
    any. customer_phone is unique, so a concurrent request that creates
    the same conversation first makes our insert fail; in that case the
    row it wrote is read back and used.

    Returns:
        The conversation id.

    Raises:
        PersistenceError: the conversation could neither be created nor read.
    """
    existing = storage.get_conversation_by_phone(db, phone)
    if existing is not None:
        return existing.id

    profile = storage.get_profile_by_phone(db, phone)
    customer_id = profile.id if profile is not None else None

    try:
        conversation = storage.insert_conversation(db, phone, customer_id=customer_id)
        return conversation.id
    except IntegrityError:
        logger.info(f"Conversation for {phone} created concurrently, re-reading")
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to create conversation: {e}")

    existing = storage.get_conversation_by_phone(db, phone)
    if existing is None:
        raise PersistenceError(f"Failed to create conversation for {phone}")
    return existing.id


def list_conversations(db: Session) -> list:
    """Active conversations, most recent activity first."""
    return storage.list_conversations(db)


def get_conversation_messages(db: Session, conversation_id: str):
    """
    Returns:
        (conversation, messages oldest first)

    Raises:
        NotFoundError: no such conversation.
    """
    conversation = storage.get_conversation(db, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation, storage.get_messages_by_conversation(db, conversation_id)
