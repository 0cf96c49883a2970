"""
Conversation registry for direct and group conversations.

This service manages:
- Conversation creation (direct conversations are idempotent per user pair)
- Per-user conversation lists, hiding direct chats with blocked users
- Typing flag, last message and unread count on the shared record
- A local view of every conversation this client has seen, updated
  optimistically and confirmed or reverted once the store answers
"""

import hashlib
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Union

from chat_gateway import CONVERSATIONS, GatewayError, PersistenceGateway

from ..exceptions import ConversationNotFound, ValidationError
from ..models import Conversation, Message, SyncState, User, from_record, to_record
from .user_service import UserService

logger = logging.getLogger(__name__)

ConversationCallback = Callable[[str, Optional[Conversation]], Union[None, Awaitable[None]]]


def _is_member(user_id: str):
    def predicate(record: dict) -> bool:
        return any(p.get("id") == user_id for p in record.get("participants", []))
    return predicate


def _last_activity(conversation: Conversation) -> int:
    return conversation.last_message.timestamp if conversation.last_message else 0


class ConversationRegistry:
    """
    Service class for conversations stored through the persistence gateway.
    """

    def __init__(self, gateway: PersistenceGateway, users: UserService):
        self.gateway = gateway
        self.users = users
        self._local: Dict[str, Conversation] = {}
        self._states: Dict[str, SyncState] = {}

    def _direct_conversation_id(self, first: str, second: str) -> str:
        """Same id for the same pair of users, whichever order they come in."""
        pair = ":".join(sorted((first, second)))
        return f"direct_{hashlib.md5(pair.encode()).hexdigest()[:12]}"

    def _generate_group_id(self) -> str:
        return f"group_{uuid.uuid4().hex[:8]}"

    def _generate_group_image(self, name: str) -> str:
        """Generate default group image URL."""
        return f"https://ui-avatars.com/api/?name={name}&background=6c5ce7&color=fff&size=150"

    # Local view

    def local_view(self, conversation_id: str) -> Optional[Conversation]:
        return self._local.get(conversation_id)

    def sync_state(self, conversation_id: str) -> Optional[SyncState]:
        return self._states.get(conversation_id)

    def apply_remote(self, conversation_id: str, conversation: Optional[Conversation]) -> None:
        """
        Apply a change reported by the store.

        Remote updates overwrite whatever the local view holds, pending
        optimistic values included: the last update applied wins.
        """
        if conversation is None:
            self._local.pop(conversation_id, None)
            self._states.pop(conversation_id, None)
            return
        self._local[conversation_id] = conversation
        self._states[conversation_id] = SyncState.CONFIRMED

    async def _write(self, conversation: Conversation, previous: Optional[Conversation],
                     on_failure: SyncState = SyncState.REVERTED) -> SyncState:
        """
        Optimistically apply conversation locally, then persist it.

        When the store (and its fallback) reject the write the local view
        is rolled back to previous, or kept as saved_locally for records
        that exist nowhere else yet.
        """
        self._local[conversation.id] = conversation
        self._states[conversation.id] = SyncState.PENDING
        try:
            await self.gateway.put(CONVERSATIONS, conversation.id, to_record(conversation))
        except GatewayError as e:
            logger.error(f"Error saving conversation {conversation.id}: {e}")
            if on_failure == SyncState.REVERTED:
                if previous is not None:
                    self._local[conversation.id] = previous
                else:
                    self._local.pop(conversation.id, None)
            self._states[conversation.id] = on_failure
            return on_failure

        # A subscription may already have confirmed a newer value; only
        # settle the state if it is still ours.
        if self._states.get(conversation.id) == SyncState.PENDING:
            self._states[conversation.id] = SyncState.CONFIRMED
        return SyncState.CONFIRMED

    # Reads

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """
        Get a conversation from the store, falling back to the local view
        when the store cannot be reached.
        """
        try:
            record = await self.gateway.get(CONVERSATIONS, conversation_id)
        except GatewayError as e:
            logger.error(f"Error getting conversation {conversation_id}: {e}")
            return self._local.get(conversation_id)

        if record is None:
            # Created while the store was down: only this client knows it
            if self._states.get(conversation_id) == SyncState.SAVED_LOCALLY:
                return self._local.get(conversation_id)
            return None
        conversation = from_record(Conversation, record)
        if self._states.get(conversation_id) != SyncState.PENDING:
            self.apply_remote(conversation_id, conversation)
        return conversation

    async def require(self, conversation_id: str) -> Conversation:
        conversation = await self.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    async def list(self, user_id: str) -> List[Conversation]:
        """
        Get the conversations user_id takes part in, most recent first.

        Direct conversations whose other participant is on the user's block
        list are left out. Group conversations are always listed.
        """
        user = await self.users.get_user(user_id)
        blocked = user.blocked_users if user else set()

        try:
            records = await self.gateway.query(CONVERSATIONS, _is_member(user_id))
            conversations = [from_record(Conversation, record) for record in records]
            for conversation in conversations:
                if self._states.get(conversation.id) != SyncState.PENDING:
                    self.apply_remote(conversation.id, conversation)
            known = {c.id for c in conversations}
            conversations.extend(
                c for cid, c in self._local.items()
                if cid not in known and self._states.get(cid) == SyncState.SAVED_LOCALLY and c.has_participant(user_id)
            )
        except GatewayError as e:
            logger.error(f"Error listing conversations for {user_id}, using local view: {e}")
            conversations = [c for c in self._local.values() if c.has_participant(user_id)]

        visible = []
        for conversation in conversations:
            if not conversation.is_group:
                peer = conversation.other_participant(user_id)
                if peer is not None and peer.id in blocked:
                    continue
            visible.append(conversation)

        return [c.as_seen_by(user_id) for c in sorted(visible, key=_last_activity, reverse=True)]

    async def search(self, user_id: str, term: str) -> List[Conversation]:
        """
        Filter the user's conversations by group name, or by the other
        participant's username for direct conversations. Case-insensitive;
        an empty term matches everything.
        """
        conversations = await self.list(user_id)
        needle = (term or "").strip().lower()
        if not needle:
            return conversations

        matches = []
        for conversation in conversations:
            if conversation.is_group and conversation.group_name:
                if needle in conversation.group_name.lower():
                    matches.append(conversation)
                continue
            peer = conversation.other_participant(user_id)
            if peer is not None and needle in peer.username.lower():
                matches.append(conversation)
        return matches

    # Writes

    async def create(self, participant_ids: List[str], group_name: Optional[str] = None,
                     group_avatar: Optional[str] = None) -> Conversation:
        """
        Create a conversation.

        Two participants and no group name make a direct conversation;
        creating it again returns the existing one. Anything with a group
        name or more than two participants is a group.

        Raises:
            ValidationError: too few participants, a group without a name,
                or a participant id that does not belong to any user
        """
        ids = list(dict.fromkeys(pid for pid in participant_ids if pid))
        if len(ids) < 2:
            raise ValidationError("A conversation needs at least two distinct participants")

        group_name = group_name.strip() if group_name else None
        is_group = group_name is not None or len(ids) > 2
        if is_group and not group_name:
            raise ValidationError("Group conversations need a name")

        if not is_group:
            conversation_id = self._direct_conversation_id(ids[0], ids[1])
            existing = await self.get(conversation_id)
            if existing is not None:
                return existing
        else:
            conversation_id = self._generate_group_id()

        participants: List[User] = []
        for pid in ids:
            user = await self.users.get_user(pid)
            if user is None:
                raise ValidationError(f"Unknown participant: {pid}")
            participants.append(user)

        conversation = Conversation(
            id=conversation_id,
            participants=participants,
            is_group=is_group,
            group_name=group_name if is_group else None,
            group_avatar=(group_avatar or self._generate_group_image(group_name)) if is_group else None,
        )
        await self._write(conversation, None, on_failure=SyncState.SAVED_LOCALLY)
        logger.info(f"Created {'group' if is_group else 'direct'} conversation {conversation_id}")
        return conversation

    async def _update(self, conversation_id: str, mutate: Callable[[Conversation], None]) -> Conversation:
        current = await self.require(conversation_id)
        previous = current.model_copy(deep=True)
        mutate(current)
        await self._write(current, previous)
        return self._local.get(conversation_id, previous)

    async def set_typing(self, conversation_id: str, is_typing: bool) -> Conversation:
        """
        Set the shared typing flag. Every subscriber of the conversation is
        told through the store; a write that fails everywhere is reverted.
        """
        def mutate(conversation: Conversation) -> None:
            conversation.typing = is_typing

        return await self._update(conversation_id, mutate)

    async def update_last_message(self, conversation_id: str, message: Message,
                                  increment_unread: bool = True) -> Conversation:
        """
        Record message as the conversation's latest.

        With increment_unread, every participant but the sender gets one more
        unread message and the sender's own count drops to 0.
        """
        def mutate(conversation: Conversation) -> None:
            conversation.last_message = message
            if increment_unread:
                for participant_id in conversation.participant_ids():
                    if participant_id == message.sender_id:
                        conversation.unread_by[participant_id] = 0
                    else:
                        conversation.unread_by[participant_id] = conversation.unread_for(participant_id) + 1
                conversation.refresh_unread_count()

        return await self._update(conversation_id, mutate)

    async def reset_unread(self, conversation_id: str, reader_id: Optional[str] = None) -> Conversation:
        """Clear reader_id's unread count, or everybody's when no reader is given."""
        def mutate(conversation: Conversation) -> None:
            if reader_id is None:
                conversation.unread_by.clear()
            else:
                conversation.unread_by[reader_id] = 0
            conversation.refresh_unread_count()
            last = conversation.last_message
            if last is not None and last.sender_id != reader_id:
                last.is_read = True

        return await self._update(conversation_id, mutate)

    async def remove_participant(self, user_id: str) -> int:
        """
        Drop a deleted user from every conversation it took part in.

        Returns:
            int: Number of conversations updated
        """
        try:
            records = await self.gateway.query(CONVERSATIONS, _is_member(user_id))
        except GatewayError as e:
            logger.error(f"Error finding conversations of {user_id}: {e}")
            return 0

        updated = 0
        for record in records:
            conversation = from_record(Conversation, record)
            previous = conversation.model_copy(deep=True)
            conversation.participants = [p for p in conversation.participants if p.id != user_id]
            if await self._write(conversation, previous) == SyncState.CONFIRMED:
                updated += 1
        return updated

    async def subscribe(self, user_id: str, on_change: ConversationCallback):
        """
        Follow every conversation user_id takes part in.

        on_change(conversation_id, conversation) receives the new record, or
        None when it was deleted. The local view is updated first.
        """
        async def handle(key: str, record: Optional[dict]) -> None:
            conversation = from_record(Conversation, record) if record else None
            self.apply_remote(key, conversation)
            result = on_change(key, conversation)
            if result is not None:
                await result

        return await self.gateway.subscribe(CONVERSATIONS, _is_member(user_id), handle)
