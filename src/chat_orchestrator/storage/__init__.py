from chat_orchestrator.storage.conversation_store import ConversationStorage, ConversationStore
from chat_orchestrator.storage.store import ConversationDatabase

__all__ = [
    "ConversationDatabase",
    "ConversationStorage",
    "ConversationStore",
]
