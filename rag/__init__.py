"""
Question answering over Telegram group-chat history.

This package provides:
- Capability and component contracts
- Per-chat dense retrieval
- Answer composition with tool calls and citation guarding
- The ChatHistoryService facade
"""

from rag.contracts import EmbeddingProvider, ChatModel, ToolInvoker, Retriever, Composer

__version__ = "0.1.0"

__all__ = [
    'EmbeddingProvider',
    'ChatModel',
    'ToolInvoker',
    'Retriever',
    'Composer',
]
