from .chat import (
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
    from_record,
    now_ms,
    to_record,
)
