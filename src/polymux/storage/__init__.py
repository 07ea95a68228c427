"""In-memory session storage for Polymux"""

from .session_registry import SessionRegistry
from .conversation_registry import ConversationEntry, ConversationRegistry, conversation_key

__all__ = ["SessionRegistry", "ConversationEntry", "ConversationRegistry", "conversation_key"]
