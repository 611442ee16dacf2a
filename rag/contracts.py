"""
Contracts (protocols) for pluggable capabilities and RAG components.

The core never depends on a provider's wire format: embedding models, chat
models and tools are injected behind these interfaces.
"""
from typing import Protocol, List, Dict, Any, Optional, Sequence
from knowledge.models import RetrievedChunk, Answer


class EmbeddingProvider(Protocol):
    """External embedding capability. May fail transiently."""

    def embed(self, text: str, model_id: str) -> List[float]:
        """
        Embed a passage (chunk transcript).

        Args:
            text: Passage text
            model_id: Embedding model identifier

        Returns:
            Vector of the model's fixed dimensionality
        """
        ...

    def embed_query(self, text: str, model_id: str) -> List[float]:
        """Embed a search query with the same model used for passages."""
        ...


class ChatModel(Protocol):
    """External chat-completion capability with optional tool calling."""

    def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 1024,
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Run one chat turn.

        Returns:
            Dict with 'content' (str or None) and 'tool_calls', a list of
            {'id', 'name', 'arguments'} dicts (empty when the model answered).
        """
        ...


class ToolInvoker(Protocol):
    """External tool capability (e.g. web search)."""

    def invoke(self, tool_name: str, args: Dict[str, Any]) -> Any:
        """
        Invoke a tool by name.

        Returns:
            A result object with `status` in {'ok', 'timeout', 'error', 'unknown_tool'}
        """
        ...

    def tool_schemas(self) -> List[Dict[str, Any]]:
        """Tool definitions in OpenAI function-calling format."""
        ...


class Retriever(Protocol):
    """Protocol for per-chat retrievers."""

    def retrieve(
        self,
        chat_id: int,
        query_vector: Sequence[float],
        k: int,
        min_similarity: float,
    ) -> List[RetrievedChunk]:
        """
        Ranked indexed chunks of one chat scoring at least `min_similarity`.
        """
        ...


class Composer(Protocol):
    """Protocol for answer composers."""

    def compose(self, question: str, retrieved_chunks: List[RetrievedChunk]) -> Answer:
        """
        Grounded answer citing only `retrieved_chunks`, or an abstention.
        """
        ...
