"""
Typing indicators.

Per conversation: idle -> start() -> typing (timer running) -> timeout or
stop() -> idle. Calling start() while typing restarts the timer. Every
notifier keeps its own timers; the shared conversation record only shows
whichever client wrote the flag last.
"""

import asyncio
import logging
from typing import Dict, List

from ..exceptions import ChatError
from .conversation_service import ConversationRegistry

logger = logging.getLogger(__name__)

TYPING_TIMEOUT_SECONDS = 3.0


class TypingNotifier:

    def __init__(self, conversations: ConversationRegistry, timeout: float = TYPING_TIMEOUT_SECONDS):
        self.conversations = conversations
        self.timeout = timeout
        self._timers: Dict[str, asyncio.Task] = {}

    def is_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._timers

    def active(self) -> List[str]:
        return list(self._timers)

    async def start(self, conversation_id: str) -> None:
        """
        Mark the conversation as typing and (re)start its timer.

        The flag is only written on the idle -> typing transition; repeated
        calls just push the timeout back.
        """
        was_typing = self._cancel_timer(conversation_id)
        if not was_typing:
            await self.conversations.set_typing(conversation_id, True)
        self._timers[conversation_id] = asyncio.create_task(self._expire(conversation_id))

    async def stop(self, conversation_id: str) -> None:
        """Cancel the timer (if any) and clear the typing flag right away."""
        self._cancel_timer(conversation_id)
        await self.conversations.set_typing(conversation_id, False)

    def _cancel_timer(self, conversation_id: str) -> bool:
        timer = self._timers.pop(conversation_id, None)
        if timer is None:
            return False
        if timer is not asyncio.current_task():
            timer.cancel()
        return True

    async def _expire(self, conversation_id: str) -> None:
        await asyncio.sleep(self.timeout)
        # Only the timer that is still registered may clear the flag
        if self._timers.get(conversation_id) is not asyncio.current_task():
            return
        del self._timers[conversation_id]
        try:
            await self.conversations.set_typing(conversation_id, False)
        except ChatError as e:
            logger.warning(f"Could not clear typing flag on {conversation_id}: {e}")

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
