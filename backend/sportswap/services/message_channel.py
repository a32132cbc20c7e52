"""
Message channel.

WHAT: Per-conversation history, read receipts, optimistic sends and live append
WHY: The visible history mixes confirmed rows, optimistic placeholders and feed pushes
     that can arrive in any order; it must converge on the store's view without duplicates
HOW: Placeholders carry a temp- id and a pending flag; persisted rows are deduplicated on
     their stable id and matched to placeholders by (sender, content); the list is re-sorted
     by created_at after every change
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from ..core.config import settings
from ..core.database import store_session
from ..core.feed import ChangeEvent, ChangeFeed, Channel, change_feed
from ..core.models import Conversation, Message
from ..models.marketplace import MessageView, ProfileSummary
from ..utils.clock import utcnow
from ..utils.exceptions import (
    AuthorizationError,
    MarketplaceError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from ..utils.logger import get_logger
from .lookups import fetch_profile, fetch_profiles, message_view, message_view_from_row

logger = get_logger(__name__)


def _load_participant_conversation(db, conversation_id: str, user_id: str) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("conversation", conversation_id)
    if user_id not in conversation.participant_ids():
        raise AuthorizationError("access this conversation", user_id, conversation_id)
    return conversation


def validate_message_content(content: Optional[str]) -> str:
    """Trimmed content, or ValidationError for blank/oversized input."""
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty", field="content", code="EMPTY_MESSAGE")
    if len(text) > settings.MESSAGE_MAX_LENGTH:
        raise ValidationError(
            f"Message cannot exceed {settings.MESSAGE_MAX_LENGTH} characters",
            field="content",
            code="MESSAGE_TOO_LONG"
        )
    return text


async def load_history(conversation_id: str, viewer_id: str) -> List[MessageView]:
    """
    All messages of a conversation, oldest first, with sender profiles.

    Sender profiles are resolved in one batch over the distinct sender ids.

    Raises:
        NotFoundError: conversation missing
        AuthorizationError: viewer is not a participant
    """
    with store_session("load message history") as db:
        _load_participant_conversation(db, conversation_id, viewer_id)
        messages = (
            db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc())
            .all()
        )
        senders = fetch_profiles(db, {message.sender_id for message in messages})
        history = [message_view(message, senders[message.sender_id]) for message in messages]

    history.sort(key=lambda m: m.created_at)
    return history


async def mark_read(conversation_id: str, user_id: str) -> int:
    """
    Stamp read_at on every unread counterpart message in the conversation.

    Idempotent: a second call finds nothing left to mark.

    Returns:
        Number of messages marked read by this call
    """
    with store_session("mark messages read") as db:
        _load_participant_conversation(db, conversation_id, user_id)
        unread = (
            db.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.sender_id != user_id,
                Message.read_at.is_(None),
            )
            .all()
        )
        now = utcnow()
        for message in unread:
            message.read_at = now

    if unread:
        logger.debug(f"Marked {len(unread)} messages read in {conversation_id} for {user_id}")
    return len(unread)


async def mark_message_read(message_id: str, reader_id: str) -> Optional[datetime]:
    """Mark one message read, only if the reader is not its sender. Returns the stamp written, if any."""
    with store_session("mark message read") as db:
        message = db.get(Message, message_id)
        if message is None or message.sender_id == reader_id or message.read_at is not None:
            return None
        message.read_at = utcnow()
        return message.read_at


async def persist_message(conversation_id: str, sender_id: str, content: str) -> MessageView:
    """
    Insert a message and advance the conversation's last_message_at.

    Both writes share one store transaction.
    """
    with store_session("send message") as db:
        conversation = _load_participant_conversation(db, conversation_id, sender_id)
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=utcnow()
        )
        db.add(message)
        conversation.last_message_at = message.created_at
        db.flush()
        view = message_view(message, fetch_profile(db, sender_id))

    logger.info(f"Message {view.id} sent in conversation {conversation_id}")
    return view


async def send_message(conversation_id: str, sender_id: str, content: str) -> MessageView:
    """Validate and persist a message (no optimistic state; see MessageChannel)."""
    text = validate_message_content(content)
    return await persist_message(conversation_id, sender_id, text)


class MessageChannel:
    """
    Live, optimistic message view of one conversation for one viewer.

    WHAT: Visible history + draft input, kept in sync with the store
    WHY: Sends show up instantly; feed pushes and confirmations must not duplicate them
    HOW: open() loads history, marks read and subscribes to inserts for the conversation;
         send_message() appends a placeholder first and reconciles after the write

    Usage:
        async with MessageChannel(conversation_id, viewer_id) as channel:
            channel.draft = "hello"
            await channel.send_message()
    """

    def __init__(self, conversation_id: str, viewer_id: str, *, feed: Optional[ChangeFeed] = None):
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self.feed = feed or change_feed
        self.messages: List[MessageView] = []
        self.draft = ""
        self.sending = False
        self.loading = False
        self._channel: Optional[Channel] = None
        self._profiles: Dict[str, ProfileSummary] = {}
        self._listeners: List[Callable[["MessageChannel"], None]] = []

    # ========== Listeners ==========

    def add_listener(self, listener: Callable[["MessageChannel"], None]) -> Callable[[], None]:
        """Register a re-render callback; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Message channel listener failed: {e}", exc_info=True)

    # ========== Lifecycle ==========

    async def open(self) -> "MessageChannel":
        """Mark counterpart messages read, load history, then follow inserts."""
        # marking first lets the loaded history carry the read stamps
        try:
            await mark_read(self.conversation_id, self.viewer_id)
        except TransientStoreError as e:
            logger.warning(f"Could not mark {self.conversation_id} read on open: {e}")

        self.loading = True
        try:
            self.messages = await load_history(self.conversation_id, self.viewer_id)
        finally:
            self.loading = False
        for message in self.messages:
            if message.sender is not None:
                self._profiles[message.sender_id] = message.sender
        self._notify()

        channel = self.feed.channel(f"messages-{self.conversation_id}")
        channel.on("messages", self._on_insert, operation="INSERT",
                   column="conversation_id", value=self.conversation_id)
        self._channel = await channel.subscribe()
        return self

    async def close(self):
        if self._channel is not None:
            await self.feed.remove_channel(self._channel)
            self._channel = None

    async def __aenter__(self) -> "MessageChannel":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ========== Sending ==========

    async def send_message(self, content: Optional[str] = None) -> Optional[MessageView]:
        """
        Optimistically send `content` (defaults to the current draft).

        Returns:
            The persisted message, or None when another send is still in flight

        Raises:
            ValidationError: blank or oversized content
            TransientStoreError: write failed; placeholder removed, draft restored
            (other MarketplaceErrors from the write restore the draft the same way)
        """
        if self.sending:
            logger.debug(f"Send ignored in {self.conversation_id}: previous send in flight")
            return None

        text = validate_message_content(self.draft if content is None else content)

        self.sending = True
        placeholder = MessageView(
            id=f"{settings.TEMP_MESSAGE_ID_PREFIX}{uuid4().hex}",
            conversation_id=self.conversation_id,
            sender_id=self.viewer_id,
            content=text,
            created_at=utcnow(),
            read_at=None,
            sender=self._profiles.get(self.viewer_id),
            pending=True,
        )
        self.messages.append(placeholder)
        self.draft = ""
        self._notify()

        try:
            persisted = await persist_message(self.conversation_id, self.viewer_id, text)
        except MarketplaceError as e:
            self._remove(placeholder.id)
            self.draft = text
            self._notify()
            logger.warning(f"Send failed in {self.conversation_id}, draft restored: {e}")
            raise
        finally:
            self.sending = False

        self._profiles.setdefault(self.viewer_id, persisted.sender)
        self._confirm(placeholder.id, persisted)
        self._notify()
        return persisted

    def _remove(self, message_id: str):
        self.messages = [m for m in self.messages if m.id != message_id]

    def _confirm(self, placeholder_id: str, persisted: MessageView):
        """Swap a placeholder for its persisted row, unless the feed already delivered it."""
        if any(m.id == persisted.id for m in self.messages):
            self._remove(placeholder_id)
        else:
            self.messages = [persisted if m.id == placeholder_id else m for m in self.messages]
        self._sort()

    def _sort(self):
        self.messages.sort(key=lambda m: m.created_at)

    # ========== Live append ==========

    async def _resolve_sender(self, sender_id: str) -> ProfileSummary:
        profile = self._profiles.get(sender_id)
        if profile is None:
            with store_session("resolve sender") as db:
                profile = fetch_profile(db, sender_id)
            self._profiles[sender_id] = profile
        return profile

    async def _on_insert(self, event: ChangeEvent):
        row = event.new
        message_id = row.get("id")
        if not message_id or any(m.id == message_id for m in self.messages):
            return

        try:
            sender = await self._resolve_sender(row["sender_id"])
        except TransientStoreError as e:
            logger.warning(f"Sender lookup failed for message {message_id}: {e}")
            sender = ProfileSummary.placeholder(row["sender_id"])
        incoming = message_view_from_row(row, sender)

        placeholder = None
        if incoming.sender_id == self.viewer_id:
            placeholder = next(
                (m for m in self.messages
                 if m.pending and m.sender_id == incoming.sender_id and m.content == incoming.content),
                None
            )

        if placeholder is not None:
            self.messages = [incoming if m.id == placeholder.id else m for m in self.messages]
        else:
            self.messages.append(incoming)
        self._sort()
        self._notify()

        if incoming.sender_id != self.viewer_id:
            try:
                read_at = await mark_message_read(incoming.id, self.viewer_id)
            except TransientStoreError as e:
                logger.warning(f"Could not mark message {incoming.id} read: {e}")
                return
            if read_at is not None:
                self.messages = [
                    m.model_copy(update={"read_at": read_at}) if m.id == incoming.id else m
                    for m in self.messages
                ]
                self._notify()
