"""
Retrievers for chat-history QA.
"""
from rag.retrievers.dense_retriever import ChatRetriever, RetrieverConfig

__all__ = ['ChatRetriever', 'RetrieverConfig']
