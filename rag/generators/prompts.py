"""
Prompt templates for answering questions from chat history.

The system prompt is kept constant across calls for provider-side prompt
caching.
"""

NO_ANSWER_TOKEN = "NO_ANSWER"

SYSTEM_PROMPT = f"""You answer questions about a group chat using excerpts of its history.

Requirements:
1. Answer ONLY from the numbered chat excerpts and tool results you are given
2. Cite the excerpts you used with their numbers, e.g. [1], [2]
3. Only cite excerpt numbers that appear in the context
4. If the excerpts do not contain the answer, reply with exactly {NO_ANSWER_TOKEN}
5. Be concise; quote people only when it helps

Tool results may add background, but claims about what was said in the chat
must be backed by an excerpt citation."""


FINAL_ANSWER_INSTRUCTION = (
    "The tool budget for this question is used up. Answer now using only the "
    f"excerpts and tool results above, or reply {NO_ANSWER_TOKEN}."
)


def format_context(chunks, max_chunks: int = 8, max_chunk_chars: int = 4000) -> str:
    """
    Format retrieved chunks as numbered excerpts.

    Args:
        chunks: List of RetrievedChunk objects
        max_chunks: Maximum chunks to include
        max_chunk_chars: Per-excerpt character cap

    Returns:
        Formatted context string
    """
    context_parts = []

    for i, retrieved in enumerate(chunks[:max_chunks], start=1):
        chunk = retrieved.chunk
        start = chunk.time_range_start.strftime("%Y-%m-%d %H:%M")
        end = chunk.time_range_end.strftime("%Y-%m-%d %H:%M")
        text = chunk.rendered_text
        if len(text) > max_chunk_chars:
            text = text[:max_chunk_chars] + "\n..."

        context_parts.append(
            f"[{i}] Messages #{chunk.first_message_id}-#{chunk.last_message_id}, {start} to {end}\n{text}\n"
        )

    return "\n".join(context_parts)


def build_qa_prompt(question: str, chunks, max_chunks: int = 8, max_chunk_chars: int = 4000) -> str:
    """
    Build user prompt for QA with citations.
    """
    context = format_context(chunks, max_chunks, max_chunk_chars)

    return f"""Chat excerpts:

{context}

Question: {question}

Instructions:
- Answer using ONLY the excerpts above (and tool results, if any)
- Cite excerpts as [1], [2], etc.
- If the excerpts don't contain the answer, reply {NO_ANSWER_TOKEN}

Answer:"""


def format_tool_result(invocation) -> str:
    """Render a ToolInvocation as the content of a tool message."""
    if invocation.status == "ok":
        return invocation.result or ""
    return f"[tool {invocation.tool_name} {invocation.status}] {invocation.error or ''}".strip()
