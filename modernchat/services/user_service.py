"""
User service for profiles, settings, presence and blocking.

This service handles:
- Creating and saving user records (last write wins, no merge)
- Settings and avatar updates
- Online/offline presence
- Per-user block lists
"""

import logging
import uuid
from typing import List, Optional

from chat_gateway import USERS, GatewayError, PersistenceGateway

from ..exceptions import UserNotFound, ValidationError
from ..models import User, UserSettings, from_record, to_record

logger = logging.getLogger(__name__)


class UserService:
    """
    Service class for user records stored through the persistence gateway.
    """

    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway

    def _generate_user_id(self) -> str:
        return f"user-{uuid.uuid4().hex[:12]}"

    def _generate_avatar_url(self, username: str) -> str:
        """Generate avatar URL for user."""
        return f"https://i.pravatar.cc/150?u={username}"

    def new_user(self, username: str, is_admin: bool = False, is_approved: bool = False,
                 user_id: Optional[str] = None) -> User:
        """Build (but do not store) a user record with default settings."""
        return User(
            id=user_id or self._generate_user_id(),
            username=username,
            avatar=self._generate_avatar_url(username),
            is_online=False,
            is_admin=is_admin,
            is_approved=is_approved,
            settings=UserSettings(display_name=username),
        )

    async def save_user(self, user: User) -> bool:
        """
        Store a user record, replacing whatever was stored before.

        Returns:
            bool: True if the record was written (remotely or to the local fallback)
        """
        try:
            await self.gateway.put(USERS, user.id, to_record(user))
            return True
        except GatewayError as e:
            logger.error(f"Error saving user {user.id}: {e}")
            return False

    async def fetch_user(self, user_id: str) -> Optional[User]:
        """Like get_user, but a store failure raises GatewayError instead of returning None."""
        record = await self.gateway.get(USERS, user_id)
        return from_record(User, record) if record else None

    async def get_user(self, user_id: str) -> Optional[User]:
        try:
            return await self.fetch_user(user_id)
        except GatewayError as e:
            logger.error(f"Error getting user {user_id}: {e}")
            return None

    async def require_user(self, user_id: str) -> User:
        user = await self.get_user(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    async def get_user_by_username(self, username: str) -> Optional[User]:
        try:
            records = await self.gateway.query(USERS, lambda r: r.get("username") == username)
        except GatewayError as e:
            logger.error(f"Error looking up user {username}: {e}")
            return None
        return from_record(User, records[0]) if records else None

    async def list_users(self, exclude_id: Optional[str] = None, approved_only: bool = True) -> List[User]:
        """
        Get registered users, e.g. the contact list for new conversations.

        Args:
            exclude_id: User to leave out (usually the caller)
            approved_only: Skip accounts still waiting for admin approval
        """
        try:
            records = await self.gateway.query(USERS)
        except GatewayError as e:
            logger.error(f"Error getting all users: {e}")
            return []

        users = [from_record(User, record) for record in records]
        return [
            user for user in users
            if user.id != exclude_id and (user.is_approved or user.is_admin or not approved_only)
        ]

    async def update_settings(self, user_id: str, settings: UserSettings) -> Optional[User]:
        """Replace a user's settings as a whole. Returns the saved user, or None."""
        return await self.update_profile(user_id, settings=settings)

    async def update_profile(self, user_id: str, avatar: Optional[str] = None,
                             settings: Optional[UserSettings] = None) -> Optional[User]:
        user = await self.get_user(user_id)
        if user is None:
            return None

        if avatar is not None:
            user.avatar = avatar
        if settings is not None:
            user.settings = settings

        return user if await self.save_user(user) else None

    async def set_online(self, user_id: str, is_online: bool) -> Optional[User]:
        user = await self.get_user(user_id)
        if user is None:
            return None
        user.is_online = is_online
        return user if await self.save_user(user) else None

    async def block_user(self, user_id: str, blocked_id: str) -> Optional[User]:
        """
        Add blocked_id to user_id's block list.

        Direct conversations with a blocked user disappear from the
        blocker's conversation list; the conversations themselves remain.
        """
        if user_id == blocked_id:
            raise ValidationError("Users cannot block themselves")
        user = await self.require_user(user_id)
        if blocked_id in user.blocked_users:
            return user
        user.blocked_users.add(blocked_id)
        return user if await self.save_user(user) else None

    async def unblock_user(self, user_id: str, blocked_id: str) -> Optional[User]:
        user = await self.require_user(user_id)
        if blocked_id not in user.blocked_users:
            return user
        user.blocked_users.discard(blocked_id)
        return user if await self.save_user(user) else None

    async def remove_user(self, user_id: str) -> bool:
        try:
            return await self.gateway.delete(USERS, user_id)
        except GatewayError as e:
            logger.error(f"Error deleting user {user_id}: {e}")
            return False
