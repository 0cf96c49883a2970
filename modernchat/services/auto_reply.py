"""
Scripted auto-reply for demos.

After every outgoing text message in a conversation, the other participant
"types" for a moment and answers with a canned acknowledgement. Disabled
unless AUTO_REPLY_ENABLED is set.
"""

import asyncio
import logging
from typing import Optional, Set

from chat_gateway import GatewayError

from ..exceptions import ChatError
from ..models import Message
from .chat_service import MessageStream
from .conversation_service import ConversationRegistry
from .typing_service import TypingNotifier

logger = logging.getLogger(__name__)

TYPING_DELAY_SECONDS = 1.0
REPLY_DELAY_SECONDS = 2.0


def reply_text(content: str) -> str:
    preview = content[:20] + ("..." if len(content) > 20 else "")
    return f'Thanks for your message: "{preview}"'


class AutoResponder:

    def __init__(self, conversations: ConversationRegistry, messages: MessageStream, typing: TypingNotifier,
                 typing_delay: float = TYPING_DELAY_SECONDS, reply_delay: float = REPLY_DELAY_SECONDS):
        self.conversations = conversations
        self.messages = messages
        self.typing = typing
        self.typing_delay = typing_delay
        self.reply_delay = reply_delay
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, message: Message) -> Optional[asyncio.Task]:
        """Queue a reply to message. Only text messages get one."""
        if message.type != "text" or not message.conversation_id:
            return None
        task = asyncio.create_task(self._reply(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _reply(self, message: Message) -> Optional[Message]:
        try:
            await asyncio.sleep(self.typing_delay)
            conversation = await self.conversations.require(message.conversation_id)
            responder = conversation.other_participant(message.sender_id)
            if responder is None:
                return None

            await self.typing.start(conversation.id)
            await asyncio.sleep(self.reply_delay)
            await self.typing.stop(conversation.id)
            return await self.messages.append(
                conversation.id, responder.id, reply_text(message.content), is_read=True
            )
        except (ChatError, GatewayError) as e:
            logger.warning(f"Auto-reply to {message.id} failed: {e}")
            return None

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
