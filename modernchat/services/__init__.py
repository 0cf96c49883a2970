from typing import Optional

from chat_gateway import PersistenceGateway

from .auth_service import AuthService, SessionStore
from .auto_reply import AutoResponder
from .chat_service import MessageStream
from .conversation_service import ConversationRegistry
from .typing_service import TYPING_TIMEOUT_SECONDS, TypingNotifier
from .user_service import UserService


class ChatServices:
    """
    Every chat service wired to one gateway.

    Services receive the gateway (and each other) through their
    constructors, so tests can hand in any backend.
    """

    def __init__(self, gateway: PersistenceGateway, admin_username: str = "admin",
                 admin_password: str = "admin", auto_reply: bool = False,
                 typing_timeout: float = TYPING_TIMEOUT_SECONDS):
        self.gateway = gateway
        self.typing_timeout = typing_timeout
        self.users = UserService(gateway)
        self.conversations = ConversationRegistry(gateway, self.users)
        self.messages = MessageStream(gateway, self.conversations)
        self.auth = AuthService(gateway, self.users, self.conversations, admin_username, admin_password)
        self.typing = self.new_typing_notifier()
        self.auto_responder: Optional[AutoResponder] = (
            AutoResponder(self.conversations, self.messages, self.typing) if auto_reply else None
        )

    def new_session(self, session_id: str = "current") -> SessionStore:
        return SessionStore(self.gateway, self.auth, session_id)

    def new_typing_notifier(self) -> TypingNotifier:
        """One notifier per client connection: timers are never shared."""
        return TypingNotifier(self.conversations, self.typing_timeout)

    async def close(self) -> None:
        if self.auto_responder is not None:
            await self.auto_responder.close()
        await self.typing.close()
        await self.gateway.close()


__all__ = [
    "AuthService",
    "AutoResponder",
    "ChatServices",
    "ConversationRegistry",
    "MessageStream",
    "SessionStore",
    "TYPING_TIMEOUT_SECONDS",
    "TypingNotifier",
    "UserService",
]
