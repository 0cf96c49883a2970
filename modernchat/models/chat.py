"""
Chat models for ModernChat.

This module defines Pydantic models for:
- Stored records (users, messages, conversations, registration requests)
- API request/response schemas
- The sync state of optimistic local updates

Stored records and API payloads use the camelCase keys the browser client
reads (``senderId``, ``isRead`` ...). Python code uses the snake_case names.
"""

import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field

MessageType = Literal["text", "image", "video", "file"]
Theme = Literal["light", "dark", "system"]
Language = Literal["en", "es", "fr", "de"]
Presence = Literal["available", "away", "busy", "offline"]

ModelT = TypeVar("ModelT", bound=BaseModel)


def now_ms() -> int:
    """Current time as epoch milliseconds, the timestamp unit of every record."""
    return int(time.time() * 1000)


class ChatModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def to_record(model: BaseModel) -> Dict[str, Any]:
    """Serialize a model into the JSON-compatible dict the gateway stores."""
    return model.model_dump(mode="json", by_alias=True)


def from_record(model_cls: Type[ModelT], record: Dict[str, Any]) -> ModelT:
    return model_cls.model_validate(record)


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SyncState(str, Enum):
    """
    Two-phase state of an optimistic local update.

    pending -> confirmed       the store accepted the write (or a remote
                               update replaced the local value)
    pending -> reverted        the write failed everywhere, local value rolled back
    pending -> saved_locally   the write failed everywhere, value kept locally
                               until retried
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SAVED_LOCALLY = "saved_locally"
    REVERTED = "reverted"


class UserSettings(ChatModel):
    """Profile settings. Always replaced as a whole."""
    theme: Theme = "system"
    notifications: bool = True
    language: Language = "en"
    status: Presence = "available"
    display_name: str = Field("", alias="displayName")
    bio: str = ""


class User(ChatModel):
    id: str
    username: str
    avatar: str
    is_online: bool = Field(False, alias="isOnline")
    is_admin: bool = Field(False, alias="isAdmin")
    is_approved: bool = Field(False, alias="isApproved")
    blocked_users: Set[str] = Field(default_factory=set, alias="blockedUsers")
    settings: Optional[UserSettings] = None


class Message(ChatModel):
    """A chat message. Only is_read ever changes after creation."""
    id: str
    sender_id: str = Field(alias="senderId")
    content: str
    timestamp: int
    is_read: bool = Field(False, alias="isRead")
    type: MessageType = "text"
    media_url: Optional[str] = Field(None, alias="mediaUrl")
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    # Orders messages appended by one stream within the same millisecond
    sequence: int = 0


class Conversation(ChatModel):
    """
    A direct (two participants, no group name) or group conversation.

    Participants are stored as user snapshots taken when they joined.
    Unread messages are counted per participant in unread_by; unread_count
    is the count of whoever the conversation is being shown to (see
    as_seen_by), or the highest count when nobody in particular.
    """
    id: str
    participants: List[User] = Field(default_factory=list)
    last_message: Optional[Message] = Field(None, alias="lastMessage")
    unread_count: int = Field(0, ge=0, alias="unreadCount")
    unread_by: Dict[str, int] = Field(default_factory=dict, alias="unreadBy")
    is_group: bool = Field(False, alias="isGroup")
    group_name: Optional[str] = Field(None, alias="groupName")
    group_avatar: Optional[str] = Field(None, alias="groupAvatar")
    typing: bool = False

    def participant_ids(self) -> List[str]:
        return [p.id for p in self.participants]

    def has_participant(self, user_id: str) -> bool:
        return any(p.id == user_id for p in self.participants)

    def unread_for(self, user_id: str) -> int:
        return self.unread_by.get(user_id, 0)

    def refresh_unread_count(self) -> None:
        self.unread_count = max(self.unread_by.values(), default=0)

    def as_seen_by(self, user_id: str) -> "Conversation":
        """Copy with unread_count set to user_id's own count."""
        return self.model_copy(update={"unread_count": self.unread_for(user_id)})

    def other_participant(self, user_id: str) -> Optional[User]:
        """The peer of a direct conversation, as seen by user_id."""
        for participant in self.participants:
            if participant.id != user_id:
                return participant
        return None


class RegistrationRequest(ChatModel):
    id: str
    username: str
    email: str
    timestamp: int
    status: RegistrationStatus = RegistrationStatus.PENDING


# API request/response schemas

class UserCreate(ChatModel):
    """Schema for registering a new account."""
    username: str = ""
    email: str = ""
    password: str = ""
    confirm_password: Optional[str] = Field(None, alias="confirmPassword")


class UserLogin(ChatModel):
    username: str = ""
    password: str = ""


class AuthResponse(ChatModel):
    token: str
    user: User
    registration: Optional[RegistrationRequest] = None


class ProfileUpdate(ChatModel):
    """Schema for updating avatar and/or settings."""
    avatar: Optional[str] = None
    settings: Optional[UserSettings] = None


class ConversationCreate(ChatModel):
    participant_ids: List[str] = Field(alias="participantIds")
    group_name: Optional[str] = Field(None, alias="groupName")
    group_avatar: Optional[str] = Field(None, alias="groupAvatar")


class MessageCreate(ChatModel):
    content: str = ""
    type: MessageType = "text"
    media_url: Optional[str] = Field(None, alias="mediaUrl")


class SendResult(ChatModel):
    message: Message
    state: SyncState


class ChatHistory(ChatModel):
    messages: List[Message]
    total_count: int = Field(alias="totalCount")
    conversation_id: str = Field(alias="conversationId")


class MessageResponse(ChatModel):
    """Generic API response for operations without a natural payload."""
    success: bool
    message: str
    data: Optional[dict] = None
