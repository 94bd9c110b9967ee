"""Chat backend integration: client, sessions, session factories, prompts."""

from .client import AIClient, ClientSettings
from .factory import DirectSessionFactory, ProviderSessionFactory, SessionFactory
from .session import ChatMessage, ChatSession

__all__ = [
    "AIClient",
    "ClientSettings",
    "ChatMessage",
    "ChatSession",
    "DirectSessionFactory",
    "ProviderSessionFactory",
    "SessionFactory",
]
