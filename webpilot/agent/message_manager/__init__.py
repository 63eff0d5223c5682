from webpilot.agent.message_manager.service import ConversationStore, InMemoryConversationStore, identity
from webpilot.agent.message_manager.utils import save_conversation

__all__ = ['ConversationStore', 'InMemoryConversationStore', 'identity', 'save_conversation']
