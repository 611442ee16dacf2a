"""
End-to-end chat-history service.
"""
from rag.pipelines.chat_history import ChatHistoryService

__all__ = ['ChatHistoryService']
