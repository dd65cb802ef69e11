from .async_metaai import AsyncMetaAI, Conversation, Media, PromptResponse, Turn
from .errors import (
    MessageTooLong,
    MetaAIError,
    RetryError,
    SessionAcquisitionFailure,
    TokenNegotiationFailure,
    TransportClosedWithoutResponse,
    TransportError,
    TransportTimeout,
)
from .session import Session, SessionAcquirer, SessionCache
from .sync_metaai import SyncMetaAI

__all__ = [
    "AsyncMetaAI",
    "Conversation",
    "Media",
    "MessageTooLong",
    "MetaAIError",
    "PromptResponse",
    "RetryError",
    "Session",
    "SessionAcquirer",
    "SessionAcquisitionFailure",
    "SessionCache",
    "SyncMetaAI",
    "TokenNegotiationFailure",
    "TransportClosedWithoutResponse",
    "TransportError",
    "TransportTimeout",
    "Turn",
]
