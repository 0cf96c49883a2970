"""
Authentication and account approval service.

This service handles:
- Registration requests that wait for an admin's approval
- Login for approved users and for the fixed admin credential
- The admin's approve / reject / delete operations
- Per-client session state persisted through the gateway

Passwords are required but not verified: there is no security model beyond
the approval list.
"""

import logging
import uuid
from typing import List, Optional

from chat_gateway import REGISTRATIONS, SESSIONS, GatewayError, PersistenceGateway

from ..exceptions import DuplicateEmail, DuplicateUsername, InvalidCredentials, ValidationError
from ..models import RegistrationRequest, RegistrationStatus, User, from_record, now_ms, to_record
from .conversation_service import ConversationRegistry
from .user_service import UserService

logger = logging.getLogger(__name__)

ADMIN_USER_ID = "user-admin"


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip()


class AuthService:
    """
    Service class for registration, login and the admin approval workflow.
    """

    def __init__(self, gateway: PersistenceGateway, users: UserService, conversations: ConversationRegistry,
                 admin_username: str = "admin", admin_password: str = "admin"):
        self.gateway = gateway
        self.users = users
        self.conversations = conversations
        self.admin_username = admin_username
        self.admin_password = admin_password

    def _generate_request_id(self) -> str:
        return f"reg-{uuid.uuid4().hex[:12]}"

    def is_admin(self, actor: Optional[User]) -> bool:
        return actor is not None and actor.is_admin

    async def _registrations(self, predicate=None) -> List[RegistrationRequest]:
        records = await self.gateway.query(REGISTRATIONS, predicate or (lambda r: True))
        return sorted((from_record(RegistrationRequest, r) for r in records), key=lambda r: r.timestamp)

    async def username_exists(self, username: str) -> bool:
        """
        A username is taken by the admin or by any registration that was not
        rejected.
        """
        wanted = _normalize(username).casefold()
        if wanted == self.admin_username.casefold():
            return True
        return bool(await self._registrations(
            lambda r: r.get("username", "").casefold() == wanted and r.get("status") != RegistrationStatus.REJECTED.value
        ))

    async def email_exists(self, email: str) -> bool:
        wanted = _normalize(email).casefold()
        return bool(await self._registrations(
            lambda r: r.get("email", "").casefold() == wanted and r.get("status") != RegistrationStatus.REJECTED.value
        ))

    async def register(self, username: str, email: str, password: str,
                       confirm_password: Optional[str] = None) -> RegistrationRequest:
        """
        File a registration request and create the (not yet approved) user.

        Returns:
            RegistrationRequest: the new request, status pending

        Raises:
            ValidationError: missing field, malformed email or password mismatch
            DuplicateUsername / DuplicateEmail: already used by a live request
            GatewayError: the request could not be stored anywhere
        """
        username, email = _normalize(username), _normalize(email)
        if not username or not email or not password:
            raise ValidationError("All fields are required")
        if "@" not in email:
            raise ValidationError("Email address is not valid")
        if confirm_password is not None and confirm_password != password:
            raise ValidationError("Passwords do not match")

        if await self.username_exists(username):
            raise DuplicateUsername(f"Username {username} already exists")
        if await self.email_exists(email):
            raise DuplicateEmail(f"Email {email} already registered")

        request = RegistrationRequest(
            id=self._generate_request_id(),
            username=username,
            email=email,
            timestamp=now_ms(),
            status=RegistrationStatus.PENDING,
        )
        await self.gateway.put(REGISTRATIONS, request.id, to_record(request))

        if await self.users.get_user_by_username(username) is None:
            await self.users.save_user(self.users.new_user(username))

        logger.info(f"Registration request {request.id} filed for {username}")
        return request

    async def pending_user(self, username: str) -> User:
        """The stored user record for a registration, or a fresh unsaved one."""
        return await self.users.get_user_by_username(username) or self.users.new_user(username)

    async def authenticate(self, username: str, password: str) -> User:
        """
        Check credentials and return the logged-in user, marked online.

        Succeeds for the admin credential, or when an approved registration
        exists for the username. Usernames compare case-insensitively, the
        admin's included.

        Raises:
            InvalidCredentials: empty credentials or no approved registration
        """
        username = _normalize(username)
        if not username or not password:
            raise InvalidCredentials("Username and password are required")

        if username.casefold() == self.admin_username.casefold() and password == self.admin_password:
            admin = await self.users.get_user(ADMIN_USER_ID) or self.users.new_user(
                username, is_admin=True, is_approved=True, user_id=ADMIN_USER_ID
            )
            admin.is_online = True
            await self.users.save_user(admin)
            return admin

        try:
            approved = await self._registrations(
                lambda r: r.get("username", "").casefold() == username.casefold()
                and r.get("status") == RegistrationStatus.APPROVED.value
            )
        except GatewayError as e:
            logger.error(f"Error checking registrations for {username}: {e}")
            raise InvalidCredentials("Login is unavailable right now") from e
        if not approved:
            raise InvalidCredentials("Invalid username or password")

        user = await self.pending_user(approved[0].username)
        user.is_approved = True
        user.is_online = True
        await self.users.save_user(user)
        return user

    # Admin operations. Non-admin actors get a silent no-op.

    async def list_registrations(self, actor: Optional[User],
                                 status: Optional[RegistrationStatus] = None) -> List[RegistrationRequest]:
        if not self.is_admin(actor):
            logger.debug("Ignoring registration listing by non-admin")
            return []
        try:
            if status is None:
                return await self._registrations()
            return await self._registrations(lambda r: r.get("status") == status.value)
        except GatewayError as e:
            logger.error(f"Error listing registrations: {e}")
            return []

    async def _decide(self, actor: Optional[User], request_id: str,
                      status: RegistrationStatus) -> Optional[RegistrationRequest]:
        if not self.is_admin(actor):
            logger.debug(f"Ignoring {status.value} of {request_id} by non-admin")
            return None

        try:
            record = await self.gateway.get(REGISTRATIONS, request_id)
        except GatewayError as e:
            logger.error(f"Error loading registration {request_id}: {e}")
            return None
        if record is None:
            return None

        request = from_record(RegistrationRequest, record)
        if request.status != RegistrationStatus.PENDING:
            return request

        request.status = status
        try:
            await self.gateway.put(REGISTRATIONS, request.id, to_record(request))
        except GatewayError as e:
            logger.error(f"Error saving registration {request_id}: {e}")
            return None

        if status == RegistrationStatus.APPROVED:
            user = await self.pending_user(request.username)
            user.is_approved = True
            await self.users.save_user(user)

        logger.info(f"Registration {request.id} for {request.username} {status.value}")
        return request

    async def approve(self, actor: Optional[User], request_id: str) -> Optional[RegistrationRequest]:
        return await self._decide(actor, request_id, RegistrationStatus.APPROVED)

    async def reject(self, actor: Optional[User], request_id: str) -> Optional[RegistrationRequest]:
        return await self._decide(actor, request_id, RegistrationStatus.REJECTED)

    async def delete_user(self, actor: Optional[User], user_id: str) -> bool:
        """
        Delete a user, remove it from every conversation and end its sessions.

        Returns False for non-admin actors, for the admin account itself and
        for unknown users.
        """
        if not self.is_admin(actor):
            logger.debug(f"Ignoring deletion of {user_id} by non-admin")
            return False
        if user_id == actor.id:
            return False

        if not await self.users.remove_user(user_id):
            return False
        updated = await self.conversations.remove_participant(user_id)
        ended = await self.end_sessions(user_id)
        logger.info(f"Deleted user {user_id}, removed it from {updated} conversations and ended {ended} sessions")
        return True

    async def end_sessions(self, user_id: str) -> int:
        """Delete every persisted session of user_id. Returns how many were removed."""
        try:
            records = await self.gateway.query(SESSIONS, lambda r: r.get("id") == user_id)
        except GatewayError as e:
            logger.error(f"Error finding sessions of {user_id}: {e}")
            return 0

        ended = 0
        for record in records:
            session_key = record.get("sessionId")
            try:
                if session_key and await self.gateway.delete(SESSIONS, session_key):
                    ended += 1
            except GatewayError as e:
                logger.error(f"Error ending session {session_key}: {e}")
        return ended


class SessionStore:
    """
    The signed-in user of one client.

    The session user is persisted under a well-known key of the sessions
    collection so that a reload can restore it. Each HTTP session token
    gets its own key.
    """

    def __init__(self, gateway: PersistenceGateway, auth: AuthService, session_id: str = "current"):
        self.gateway = gateway
        self.auth = auth
        self.session_id = session_id
        self.user: Optional[User] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None and (self.user.is_approved or self.user.is_admin)

    async def _persist(self) -> None:
        record = to_record(self.user)
        record["sessionId"] = self.session_id
        try:
            await self.gateway.put(SESSIONS, self.session_id, record)
        except GatewayError as e:
            # The session still works for this process
            logger.warning(f"Could not persist session {self.session_id}: {e}")

    async def restore(self) -> Optional[User]:
        """Reload a previously persisted session user, if any."""
        try:
            record = await self.gateway.get(SESSIONS, self.session_id)
        except GatewayError as e:
            logger.warning(f"Could not restore session {self.session_id}: {e}")
            return None
        self.user = from_record(User, record) if record else None
        return self.user

    async def login(self, username: str, password: str) -> User:
        self.user = await self.auth.authenticate(username, password)
        await self._persist()
        return self.user

    async def register(self, username: str, email: str, password: str,
                       confirm_password: Optional[str] = None) -> RegistrationRequest:
        """
        Register and keep the pending user as the session user. The session
        is not authenticated until an admin approves the request.
        """
        request = await self.auth.register(username, email, password, confirm_password)
        self.user = await self.auth.pending_user(request.username)
        await self._persist()
        return request

    async def update(self, user: User) -> None:
        """Replace the session user, e.g. after saving settings."""
        self.user = user
        await self._persist()

    async def logout(self) -> None:
        """Clear the session. Never fails."""
        self.user = None
        try:
            await self.gateway.delete(SESSIONS, self.session_id)
        except GatewayError as e:
            logger.warning(f"Could not clear session {self.session_id}: {e}")
