"""
ModernChat API

This is the FastAPI application that provides:
- Registration, login and the admin approval workflow
- Conversations, messages, settings and block lists over REST
- A WebSocket endpoint for live messages, typing indicators and presence
- Pluggable storage through the persistence gateway

Run with: uvicorn modernchat.main:app --reload --host 0.0.0.0 --port 8000
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from chat_gateway import GatewayError, GatewayUnavailable, PersistenceGateway, RedisGateway, create_gateway
from chat_gateway.redis_client import check_connection

from .config import Settings, settings
from .exceptions import (
    ChatError,
    ConversationNotFound,
    DuplicateEmail,
    DuplicateUsername,
    InvalidCredentials,
    UserNotFound,
    ValidationError,
)
from .models import (
    AuthResponse,
    ChatHistory,
    Conversation,
    ConversationCreate,
    Message,
    MessageCreate,
    MessageResponse,
    ProfileUpdate,
    RegistrationRequest,
    RegistrationStatus,
    SendResult,
    SyncState,
    User,
    UserCreate,
    UserLogin,
    UserSettings,
    to_record,
)
from .services import ChatServices, SessionStore, TypingNotifier

logger = logging.getLogger(__name__)

SYNC_INTERVAL_SECONDS = 60


class ConnectionManager:
    """
    Manages WebSocket connections for real-time messaging.

    Handles:
    - Active WebSocket connections, several per user (one per tab)
    - Sending frames to every connection of a set of users
    """

    def __init__(self):
        # Store active connections: {connection_id: websocket}
        self.active_connections: Dict[str, WebSocket] = {}
        # Store owner of each connection: {connection_id: user_id}
        self.connection_users: Dict[str, str] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> str:
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        self.connection_users[connection_id] = user_id
        logger.info(f"User {user_id} connected (ID: {connection_id})")
        return connection_id

    def disconnect(self, connection_id: str) -> Optional[str]:
        """Forget a connection. Returns its user id."""
        self.active_connections.pop(connection_id, None)
        user_id = self.connection_users.pop(connection_id, None)
        if user_id:
            logger.info(f"User {user_id} disconnected (ID: {connection_id})")
        return user_id

    def is_online(self, user_id: str) -> bool:
        return user_id in self.connection_users.values()

    async def send(self, connection_id: str, payload: Dict[str, Any]) -> None:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_text(json.dumps(payload))
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.warning(f"Error sending to {connection_id}: {e}")
            self.disconnect(connection_id)

    async def send_to_users(self, user_ids: Set[str], payload: Dict[str, Any],
                            exclude_connection: Optional[str] = None) -> None:
        targets = [
            connection_id for connection_id, user_id in list(self.connection_users.items())
            if user_id in user_ids and connection_id != exclude_connection
        ]
        for connection_id in targets:
            await self.send(connection_id, payload)

    async def broadcast(self, payload: Dict[str, Any], exclude_connection: Optional[str] = None) -> None:
        for connection_id in list(self.active_connections):
            if connection_id != exclude_connection:
                await self.send(connection_id, payload)


# Dependencies

def get_services(request: Request) -> ChatServices:
    return request.app.state.services


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def load_session(app: FastAPI, token: Optional[str]) -> Optional[SessionStore]:
    """
    Find the session for a token, restoring it from the store if needed.

    The session user is refreshed from the users collection. A user that no
    longer exists ends the session; an unreachable store keeps the cached copy.
    """
    if not token:
        return None
    sessions: Dict[str, SessionStore] = app.state.sessions
    session = sessions.get(token)
    if session is None:
        session = app.state.services.new_session(token)
        if await session.restore() is None:
            return None
        sessions[token] = session
    if session.user is None:
        return None

    try:
        user = await app.state.services.users.fetch_user(session.user.id)
    except GatewayError as e:
        logger.warning(f"Cannot refresh user {session.user.id}, using the session copy: {e}")
        return session
    if user is None:
        sessions.pop(token, None)
        await session.logout()
        return None
    session.user = user
    return session


async def get_session(request: Request, authorization: Optional[str] = Header(None)) -> SessionStore:
    session = await load_session(request.app, _bearer_token(authorization))
    if session is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return session


async def current_user(session: SessionStore = Depends(get_session)) -> User:
    """The signed-in user. Pending accounts are refused."""
    user = session.user
    if not (user.is_approved or user.is_admin):
        raise HTTPException(status_code=403, detail="Account awaiting admin approval")
    return user


async def member_conversation(conversation_id: str, user: User = Depends(current_user),
                              services: ChatServices = Depends(get_services)) -> Conversation:
    conversation = await services.conversations.require(conversation_id)
    if not conversation.has_participant(user.id):
        raise ConversationNotFound(f"Conversation {conversation_id} not found")
    return conversation.as_seen_by(user.id)


router = APIRouter()


@router.get("/", response_model=dict)
async def root():
    """
    Root endpoint - API health check.
    """
    return {
        "message": "ModernChat API is running!",
        "version": "1.0.0",
        "endpoints": {
            "websocket": "/ws/chat?token=<session token>",
            "auth": "/api/auth/{register,login,logout,me}",
            "conversations": "/api/conversations",
            "admin": "/api/admin/registrations",
        },
    }


# Authentication Endpoints

@router.post("/api/auth/register", response_model=AuthResponse, status_code=201)
async def register_user(user_data: UserCreate, request: Request, services: ChatServices = Depends(get_services)):
    """
    Register a new account. The returned session stays unauthenticated until
    an admin approves the registration request.
    """
    token = uuid.uuid4().hex
    session = services.new_session(token)
    registration = await session.register(
        user_data.username, user_data.email, user_data.password, user_data.confirm_password
    )
    request.app.state.sessions[token] = session
    return AuthResponse(token=token, user=session.user, registration=registration)


@router.post("/api/auth/login", response_model=AuthResponse)
async def login_user(login_data: UserLogin, request: Request, services: ChatServices = Depends(get_services)):
    token = uuid.uuid4().hex
    session = services.new_session(token)
    user = await session.login(login_data.username, login_data.password)
    request.app.state.sessions[token] = session
    return AuthResponse(token=token, user=user)


@router.post("/api/auth/logout", response_model=MessageResponse)
async def logout_user(request: Request, session: SessionStore = Depends(get_session)):
    await session.logout()
    request.app.state.sessions.pop(session.session_id, None)
    return MessageResponse(success=True, message="Logged out")


@router.get("/api/auth/me", response_model=User)
async def get_me(session: SessionStore = Depends(get_session)):
    return session.user


# Admin Endpoints (non-admin callers get an empty result, never an error)

@router.get("/api/admin/registrations", response_model=List[RegistrationRequest])
async def list_registrations(status: Optional[RegistrationStatus] = None,
                             user: User = Depends(current_user),
                             services: ChatServices = Depends(get_services)):
    return await services.auth.list_registrations(user, status)


@router.post("/api/admin/registrations/{request_id}/approve", response_model=Optional[RegistrationRequest])
async def approve_registration(request_id: str, user: User = Depends(current_user),
                               services: ChatServices = Depends(get_services)):
    return await services.auth.approve(user, request_id)


@router.post("/api/admin/registrations/{request_id}/reject", response_model=Optional[RegistrationRequest])
async def reject_registration(request_id: str, user: User = Depends(current_user),
                              services: ChatServices = Depends(get_services)):
    return await services.auth.reject(user, request_id)


@router.delete("/api/admin/users/{user_id}", response_model=MessageResponse)
async def delete_user(user_id: str, user: User = Depends(current_user),
                      services: ChatServices = Depends(get_services)):
    deleted = await services.auth.delete_user(user, user_id)
    return MessageResponse(success=deleted, message="User deleted" if deleted else "Nothing deleted")


# User Endpoints

@router.get("/api/users", response_model=List[User])
async def list_users(user: User = Depends(current_user), services: ChatServices = Depends(get_services)):
    """Approved users other than the caller, e.g. to start a conversation."""
    return await services.users.list_users(exclude_id=user.id)


@router.put("/api/users/me/settings", response_model=User)
async def update_settings(new_settings: UserSettings, user: User = Depends(current_user),
                          session: SessionStore = Depends(get_session),
                          services: ChatServices = Depends(get_services)):
    updated = await services.users.update_settings(user.id, new_settings)
    if updated is None:
        raise HTTPException(status_code=503, detail="Settings could not be saved")
    await session.update(updated)
    return updated


@router.put("/api/users/me/profile", response_model=User)
async def update_profile(profile_data: ProfileUpdate, user: User = Depends(current_user),
                         session: SessionStore = Depends(get_session),
                         services: ChatServices = Depends(get_services)):
    updated = await services.users.update_profile(user.id, profile_data.avatar, profile_data.settings)
    if updated is None:
        raise HTTPException(status_code=503, detail="Profile could not be saved")
    await session.update(updated)
    return updated


@router.post("/api/users/me/blocked/{blocked_id}", response_model=User)
async def block_user(blocked_id: str, user: User = Depends(current_user),
                     services: ChatServices = Depends(get_services)):
    updated = await services.users.block_user(user.id, blocked_id)
    if updated is None:
        raise HTTPException(status_code=503, detail="Block list could not be saved")
    return updated


@router.delete("/api/users/me/blocked/{blocked_id}", response_model=User)
async def unblock_user(blocked_id: str, user: User = Depends(current_user),
                       services: ChatServices = Depends(get_services)):
    updated = await services.users.unblock_user(user.id, blocked_id)
    if updated is None:
        raise HTTPException(status_code=503, detail="Block list could not be saved")
    return updated


# Conversation Endpoints

@router.get("/api/conversations", response_model=List[Conversation])
async def list_conversations(search: Optional[str] = None, user: User = Depends(current_user),
                             services: ChatServices = Depends(get_services)):
    if search:
        return await services.conversations.search(user.id, search)
    return await services.conversations.list(user.id)


@router.post("/api/conversations", response_model=Conversation, status_code=201)
async def create_conversation(conversation_data: ConversationCreate, user: User = Depends(current_user),
                              services: ChatServices = Depends(get_services)):
    """Start a conversation with the caller as one of the participants."""
    participant_ids = [user.id] + [pid for pid in conversation_data.participant_ids if pid != user.id]
    conversation = await services.conversations.create(
        participant_ids, conversation_data.group_name, conversation_data.group_avatar
    )
    return conversation.as_seen_by(user.id)


@router.get("/api/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation: Conversation = Depends(member_conversation)):
    return conversation


@router.get("/api/conversations/{conversation_id}/messages", response_model=ChatHistory)
async def get_chat_history(conversation: Conversation = Depends(member_conversation),
                           services: ChatServices = Depends(get_services)):
    messages = await services.messages.list(conversation.id)
    return ChatHistory(messages=messages, total_count=len(messages), conversation_id=conversation.id)


@router.post("/api/conversations/{conversation_id}/messages", response_model=SendResult, status_code=201)
async def send_message(message_data: MessageCreate, user: User = Depends(current_user),
                       conversation: Conversation = Depends(member_conversation),
                       services: ChatServices = Depends(get_services)):
    """
    Send a message via REST API (alternative to WebSocket).

    state is saved_locally when the message could not reach any store.
    """
    message = await services.messages.append(
        conversation.id, user.id, message_data.content, message_data.type, message_data.media_url
    )
    if services.auto_responder is not None:
        services.auto_responder.schedule(message)
    return SendResult(message=message, state=services.messages.sync_state(message.id))


@router.post("/api/conversations/{conversation_id}/read", response_model=MessageResponse)
async def mark_conversation_read(user: User = Depends(current_user),
                                 conversation: Conversation = Depends(member_conversation),
                                 services: ChatServices = Depends(get_services)):
    count = await services.messages.mark_read(conversation.id, user.id)
    return MessageResponse(success=True, message=f"{count} messages marked read", data={"count": count})


# WebSocket endpoint for real-time chat

class ChatConnection:
    """
    One WebSocket client (one browser tab).

    Owns its own typing timers and the store subscriptions that push
    conversation and message changes to the socket.
    """

    def __init__(self, websocket: WebSocket, user: User, services: ChatServices, manager: ConnectionManager):
        self.websocket = websocket
        self.user = user
        self.services = services
        self.manager = manager
        self.typing: TypingNotifier = services.new_typing_notifier()
        self.conversation_ids: Set[str] = set()
        self.connection_id: Optional[str] = None
        self._subscriptions = []

    async def open(self) -> None:
        self.connection_id = await self.manager.connect(self.websocket, self.user.id)
        for conversation in await self.services.conversations.list(self.user.id):
            self.conversation_ids.add(conversation.id)

        self._subscriptions.append(
            await self.services.conversations.subscribe(self.user.id, self._on_conversation)
        )
        self._subscriptions.append(
            await self.services.messages.subscribe_many(self.conversation_ids, self._on_message)
        )

        await self.services.users.set_online(self.user.id, True)
        await self.manager.broadcast({"type": "user_online", "userId": self.user.id}, self.connection_id)

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        for conversation_id in self.typing.active():
            try:
                await self.typing.stop(conversation_id)
            except ChatError as e:
                logger.warning(f"Could not clear typing on {conversation_id}: {e}")
        await self.typing.close()

        self.manager.disconnect(self.connection_id)
        if not self.manager.is_online(self.user.id):
            await self.services.users.set_online(self.user.id, False)
            await self.manager.broadcast({"type": "user_offline", "userId": self.user.id})

    async def send(self, payload: Dict[str, Any]) -> None:
        await self.manager.send(self.connection_id, payload)

    async def _on_conversation(self, conversation_id: str, conversation: Optional[Conversation]) -> None:
        if conversation is None:
            self.conversation_ids.discard(conversation_id)
            return
        self.conversation_ids.add(conversation_id)
        seen = conversation.as_seen_by(self.user.id)
        await self.send({"type": "conversation_updated", "conversation": to_record(seen)})

    async def _on_message(self, message: Message) -> None:
        await self.send({"type": "message", "message": to_record(message)})

    async def _member_conversation(self, conversation_id: Optional[str]) -> Conversation:
        if not conversation_id:
            raise ValidationError("conversation_id is required")
        conversation = await self.services.conversations.require(conversation_id)
        if not conversation.has_participant(self.user.id):
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    async def handle(self, data: Dict[str, Any]) -> None:
        """
        Message Types Handled:
            - message: chat message {conversation_id, content, message_type?, media_url?}
            - typing_start / typing_stop: typing indicator {conversation_id}
            - read: mark a conversation read {conversation_id}
        """
        if not isinstance(data, dict):
            raise ValidationError("Frames must be JSON objects")
        message_type = data.get("type", "message")
        conversation = await self._member_conversation(data.get("conversation_id"))

        if message_type == "message":
            try:
                frame = MessageCreate(
                    content=data.get("content", ""),
                    type=data.get("message_type", "text"),
                    media_url=data.get("media_url"),
                )
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid message frame: {e.error_count()} invalid field(s)") from e
            message = await self.services.messages.append(
                conversation.id, self.user.id, frame.content, frame.type, frame.media_url
            )
            if self.services.messages.sync_state(message.id) != SyncState.CONFIRMED:
                await self.send({"type": "message", "message": to_record(message), "state": "saved_locally"})
            if self.services.auto_responder is not None:
                self.services.auto_responder.schedule(message)

        elif message_type in ("typing_start", "typing_stop"):
            is_typing = message_type == "typing_start"
            if is_typing:
                await self.typing.start(conversation.id)
            else:
                await self.typing.stop(conversation.id)
            await self.manager.send_to_users(
                set(conversation.participant_ids()),
                {"type": "typing_status", "conversationId": conversation.id,
                 "userId": self.user.id, "isTyping": is_typing},
                exclude_connection=self.connection_id,
            )

        elif message_type == "read":
            await self.services.messages.mark_read(conversation.id, self.user.id)

        else:
            raise ValidationError(f"Unknown frame type: {message_type}")


async def websocket_endpoint(websocket: WebSocket, token: str = ""):
    """
    WebSocket endpoint for real-time chat communication.

    Query Parameters:
        token: Session token returned by login
    """
    session = await load_session(websocket.app, token)
    if session is None or not session.is_authenticated:
        await websocket.close(code=1008)
        return

    services: ChatServices = websocket.app.state.services
    connection = ChatConnection(websocket, session.user, services, websocket.app.state.manager)
    await connection.open()

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                await connection.handle(json.loads(raw))
            except json.JSONDecodeError:
                await connection.send({"type": "error", "detail": "Frames must be JSON"})
            except ChatError as e:
                await connection.send({"type": "error", "detail": str(e)})
    except WebSocketDisconnect:
        pass
    finally:
        await connection.close()


# Error handling

ERROR_STATUS = {
    DuplicateUsername: 409,
    DuplicateEmail: 409,
    ValidationError: 400,
    InvalidCredentials: 401,
    ConversationNotFound: 404,
    UserNotFound: 404,
}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(GatewayUnavailable)
    async def gateway_error_handler(request: Request, exc: GatewayUnavailable):
        logger.error(f"Storage unavailable during {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Storage is unavailable, try again later"})


# Background task retrying locally saved messages

async def sync_task(services: ChatServices, interval: float = SYNC_INTERVAL_SECONDS):
    while True:
        await asyncio.sleep(interval)
        synced = await services.messages.retry_unsynced()
        if synced:
            logger.info(f"Synced {synced} locally saved messages")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(gateway: Optional[PersistenceGateway] = None, app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application around a gateway. Without one, the gateway named by
    the configuration is created.
    """
    app_settings = app_settings or settings
    if gateway is None:
        gateway = create_gateway(
            app_settings.STORAGE_BACKEND,
            redis_url=app_settings.REDIS_URL,
            redis_prefix=app_settings.REDIS_KEY_PREFIX,
            local_path=app_settings.LOCAL_STORE_PATH,
            use_fallback=app_settings.STORAGE_FALLBACK,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("ModernChat API starting up...")
        primary = getattr(app.state.services.gateway, "primary", app.state.services.gateway)
        if isinstance(primary, RedisGateway) and not await check_connection(primary.redis_client):
            logger.warning("Redis is unreachable, writes will go to the local store")
        task = asyncio.create_task(sync_task(app.state.services))
        try:
            yield
        finally:
            logger.info("ModernChat API shutting down...")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await app.state.services.close()

    app = FastAPI(
        title="ModernChat API",
        description="Chat backend with admin-approved accounts and pluggable storage",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = app_settings
    app.state.services = ChatServices(
        gateway,
        admin_username=app_settings.ADMIN_USERNAME,
        admin_password=app_settings.ADMIN_PASSWORD,
        auto_reply=app_settings.AUTO_REPLY_ENABLED,
    )
    app.state.sessions = {}
    app.state.manager = ConnectionManager()

    app.include_router(router)
    app.add_api_websocket_route("/ws/chat", websocket_endpoint)
    register_exception_handlers(app)
    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "modernchat.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True,
        log_level=settings.LOG_LEVEL.lower(),
    )
