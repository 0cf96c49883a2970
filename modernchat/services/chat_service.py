"""
Chat service for message operations.

This service manages:
- Appending messages to a conversation's stream
- Updating the conversation's last message and unread count
- Chat history retrieval (always re-fetched from the store)
- Read receipts
- Messages kept locally when the store and its fallback are both down
"""

import itertools
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from chat_gateway import MESSAGES, GatewayError, PersistenceGateway

from ..exceptions import ValidationError
from ..models import Message, SyncState, from_record, now_ms, to_record
from .conversation_service import ConversationRegistry

logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("text", "image", "video", "file")

MessageCallback = Callable[[Message], Union[None, Awaitable[None]]]


def _in_conversation(conversation_id: str):
    def predicate(record: dict) -> bool:
        return record.get("conversationId") == conversation_id
    return predicate


class MessageStream:
    """
    Service class for per-conversation message streams.
    """

    def __init__(self, gateway: PersistenceGateway, conversations: ConversationRegistry):
        self.gateway = gateway
        self.conversations = conversations
        self._unsynced: Dict[str, Message] = {}
        self._states: Dict[str, SyncState] = {}
        self._sequence = itertools.count(1)

    def _generate_message_id(self) -> str:
        return f"msg-{uuid.uuid4().hex}"

    def sync_state(self, message_id: str) -> Optional[SyncState]:
        return self._states.get(message_id)

    def unsynced(self, conversation_id: Optional[str] = None) -> List[Message]:
        return [
            message for message in self._unsynced.values()
            if conversation_id is None or message.conversation_id == conversation_id
        ]

    def _validate(self, content: str, message_type: str, media_url: Optional[str]) -> None:
        if not isinstance(content, str) or not (media_url is None or isinstance(media_url, str)):
            raise ValidationError("Message content and media URL must be strings")
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Unsupported message type: {message_type}")
        if message_type == "text" and not (content or "").strip():
            raise ValidationError("Message content is required")
        if message_type != "text" and not media_url:
            raise ValidationError(f"{message_type} messages need a media URL")

    async def append(self, conversation_id: str, sender_id: str, content: str,
                     message_type: str = "text", media_url: Optional[str] = None,
                     is_read: bool = False, increment_unread: bool = True) -> Message:
        """
        Append a message to a conversation.

        The message is written first, then the conversation's last message
        and unread count. The two writes are independent: if the second one
        fails the conversation keeps a stale last message.

        Args:
            conversation_id: Target conversation
            sender_id: Must be a participant of the conversation
            content: Message text (caption for media messages)
            message_type: text, image, video or file
            media_url: Required for anything but text

        Returns:
            Message: The stored message. Check sync_state(message.id) to see
            whether it only exists locally.

        Raises:
            ValidationError: empty text, missing media URL, or a sender that
                is not in the conversation
            ConversationNotFound: unknown conversation
        """
        self._validate(content, message_type, media_url)
        conversation = await self.conversations.require(conversation_id)
        if not conversation.has_participant(sender_id):
            raise ValidationError(f"{sender_id} is not a participant of {conversation_id}")

        message = Message(
            id=self._generate_message_id(),
            sender_id=sender_id,
            content=content,
            timestamp=now_ms(),
            is_read=is_read,
            type=message_type,
            media_url=media_url,
            conversation_id=conversation_id,
            sequence=next(self._sequence),
        )

        self._states[message.id] = SyncState.PENDING
        try:
            await self.gateway.put(MESSAGES, message.id, to_record(message))
            self._states[message.id] = SyncState.CONFIRMED
        except GatewayError as e:
            logger.error(f"Message {message.id} saved locally only: {e}")
            self._unsynced[message.id] = message
            self._states[message.id] = SyncState.SAVED_LOCALLY

        await self.conversations.update_last_message(conversation_id, message, increment_unread)
        return message

    async def list(self, conversation_id: str) -> List[Message]:
        """
        Get a conversation's messages in ascending timestamp order.

        Nothing is cached: every call asks the store again. Messages that
        could only be saved locally are merged in.
        """
        try:
            records = await self.gateway.query(MESSAGES, _in_conversation(conversation_id))
            messages = [from_record(Message, record) for record in records]
        except GatewayError as e:
            logger.error(f"Error retrieving messages for {conversation_id}: {e}")
            messages = []

        known = {message.id for message in messages}
        messages.extend(m for m in self.unsynced(conversation_id) if m.id not in known)
        return sorted(messages, key=lambda m: (m.timestamp, m.sequence))

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """
        Mark every message from other senders as read and reset the
        reader's unread count.

        Returns:
            int: Number of messages flipped to read
        """
        flipped = 0
        for message in await self.list(conversation_id):
            if message.is_read or message.sender_id == reader_id:
                continue
            message.is_read = True
            if message.id in self._unsynced:
                self._unsynced[message.id] = message
                flipped += 1
                continue
            try:
                await self.gateway.put(MESSAGES, message.id, to_record(message))
                flipped += 1
            except GatewayError as e:
                logger.error(f"Error marking message {message.id} read: {e}")

        await self.conversations.reset_unread(conversation_id, reader_id)
        return flipped

    async def retry_unsynced(self) -> int:
        """
        Try again to store messages that were only saved locally.

        Returns:
            int: Number of messages that reached the store
        """
        synced = 0
        for message in list(self._unsynced.values()):
            try:
                await self.gateway.put(MESSAGES, message.id, to_record(message))
            except GatewayError as e:
                logger.warning(f"Message {message.id} still not stored: {e}")
                continue

            del self._unsynced[message.id]
            self._states[message.id] = SyncState.CONFIRMED
            synced += 1

            conversation = await self.conversations.get(message.conversation_id)
            last = conversation.last_message if conversation else None
            stale = last is None or (last.id != message.id and last.timestamp <= message.timestamp)
            if conversation is not None and stale:
                await self.conversations.update_last_message(message.conversation_id, message, increment_unread=False)

        if synced:
            logger.info(f"Stored {synced} locally saved messages")
        return synced

    async def _subscribe(self, predicate, on_message: MessageCallback):
        async def handle(key: str, record: Optional[dict]) -> None:
            if record is None:
                return
            result = on_message(from_record(Message, record))
            if result is not None:
                await result

        return await self.gateway.subscribe(MESSAGES, predicate, handle)

    async def subscribe(self, conversation_id: str, on_message: MessageCallback):
        """Call on_message for every message stored or updated in the conversation."""
        return await self._subscribe(_in_conversation(conversation_id), on_message)

    async def subscribe_many(self, conversation_ids: Set[str], on_message: MessageCallback):
        """
        Like subscribe, for a set of conversations. The set is read on every
        change, so ids added to it later are followed too.
        """
        return await self._subscribe(lambda r: r.get("conversationId") in conversation_ids, on_message)
