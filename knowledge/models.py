"""
Core data models for the chat history knowledge base.
"""
import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def to_epoch(ts: Optional[datetime]) -> Optional[float]:
    if ts is None:
        return None
    return ensure_utc(ts).timestamp()


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RawEvent(BaseModel):
    """
    A normalized inbound message or edit, as delivered by the feed.

    Immutable once stored. Identity is (chat_id, message_id) per message and
    source_update_id per delivery.
    """
    source_update_id: int
    chat_id: int
    message_id: int
    timestamp: datetime
    text: str = ""  # text or caption, empty for non-text messages

    sender_id: Optional[int] = None
    sender_name: Optional[str] = None
    reply_to_id: Optional[int] = None
    thread_id: Optional[int] = None

    is_edit: bool = False
    raw_payload_hash: Optional[str] = None
    received_at: Optional[datetime] = None

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "source_update_id": 918273,
                "chat_id": -1001234567890,
                "message_id": 4512,
                "sender_id": 77,
                "sender_name": "alice",
                "timestamp": "2024-05-01T14:00:00Z",
                "text": "Deploy is done, see the dashboard",
            }
        }

    def payload_hash(self) -> str:
        """Hash of the delivered payload, computed from content when absent."""
        if self.raw_payload_hash:
            return self.raw_payload_hash
        content = json.dumps(
            {
                "chat_id": self.chat_id,
                "message_id": self.message_id,
                "sender_id": self.sender_id,
                "text": self.text,
                "reply_to_id": self.reply_to_id,
                "thread_id": self.thread_id,
            },
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.sha256(content.encode("utf-8")).hexdigest()


class MessageRecord(BaseModel):
    """A stored revision of a chat message (0 = original, n = n-th edit)."""
    chat_id: int
    message_id: int
    revision: int
    source_update_id: int
    timestamp: datetime
    text: str = ""
    sender_id: Optional[int] = None
    sender_name: Optional[str] = None
    reply_to_id: Optional[int] = None
    thread_id: Optional[int] = None
    payload_hash: str
    received_at: datetime

    @property
    def speaker(self) -> str:
        if self.sender_name:
            return self.sender_name
        if self.sender_id is not None:
            return f"user{self.sender_id}"
        return "unknown"


class RecordStatus(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"


class RecordResult(BaseModel):
    """Outcome of EventStore.record."""
    status: RecordStatus
    revision: Optional[int] = None
    enqueued_work_ids: List[str] = Field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return self.status == RecordStatus.DUPLICATE


class ChunkStatus(str, Enum):
    PENDING_EMBEDDING = "pending_embedding"
    INDEXED = "indexed"
    STALE = "stale"
    SUPERSEDED = "superseded"


def stable_chunk_id(chat_id: int, first_message_id: int, last_message_id: int, content_hash: str) -> str:
    key = f"{chat_id}|{first_message_id}:{last_message_id}|{content_hash}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:20]


class ChunkCandidate(BaseModel):
    """
    Chunker output: a contiguous span of one chat's messages.

    `is_open` marks the trailing accumulator that was not closed by a gap or
    size boundary and may still grow.
    """
    chat_id: int
    message_ids: List[int]
    first_message_id: int
    last_message_id: int
    time_range_start: datetime
    time_range_end: datetime
    participants: List[str] = Field(default_factory=list)
    message_count: int
    token_count: int
    rendered_text: str
    content_hash: str
    is_open: bool = False

    @property
    def chunk_id(self) -> str:
        return stable_chunk_id(self.chat_id, self.first_message_id, self.last_message_id, self.content_hash)


class Chunk(BaseModel):
    """
    Persisted retrieval unit. Owned by the indexer; text is a snapshot and
    never rewritten in place.
    """
    chunk_id: str
    chat_id: int
    first_message_id: int
    last_message_id: int
    time_range_start: datetime
    time_range_end: datetime
    participant_set: List[str] = Field(default_factory=list)
    message_count: int
    token_count: int = 0
    rendered_text: str
    content_hash: str
    is_open: bool = False
    status: ChunkStatus = ChunkStatus.PENDING_EMBEDDING

    created_at: Optional[datetime] = None
    indexed_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None
    superseded_by: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status != ChunkStatus.SUPERSEDED


class Embedding(BaseModel):
    """One current vector per (chunk_id, model_id)."""
    chunk_id: str
    model_id: str
    vector: List[float]
    created_at: Optional[datetime] = None

    @property
    def dim(self) -> int:
        return len(self.vector)


class WorkKind(str, Enum):
    CHUNK_REGION = "chunk_region"
    EMBED_CHUNK = "embed_chunk"
    REEMBED_CHUNK = "reembed_chunk"


class WorkState(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class WorkItem(BaseModel):
    """
    Durable unit of deferred work.

    Payloads:
      chunk_region:  {"from_message_id": int, "to_message_id": int | None}
      embed_chunk:   {"chunk_id": str, "model_id": str}
      reembed_chunk: {"chunk_id": str, "model_id": str}
    """
    work_id: str
    chat_id: int
    kind: WorkKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    state: WorkState = WorkState.QUEUED
    attempt_count: int = 0
    last_error: Optional[str] = None

    owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RetrievedChunk(BaseModel):
    """A chunk returned by the retriever with its cosine similarity."""
    chunk: Chunk
    score: float
    retriever_tag: str = "dense"
    metadata: Dict[str, Any] = Field(default_factory=dict)


def message_link(chat_id: int, message_id: int, username: Optional[str] = None) -> Optional[str]:
    """
    Build a t.me link to a message.

    Public chats link by username; supergroups (-100 prefixed ids) link via
    the internal /c/ form. Basic groups have no linkable messages.
    """
    if username:
        return f"https://t.me/{username}/{message_id}"
    raw = str(chat_id)
    if raw.startswith("-100"):
        return f"https://t.me/c/{raw[4:]}/{message_id}"
    return None


class Citation(BaseModel):
    """
    Citation linking an answer to a retrieved chunk of chat history.
    """
    index: int  # 1-based marker used in the answer text
    chunk_id: str
    chat_id: int
    first_message_id: int
    last_message_id: int
    time_range_start: datetime
    time_range_end: datetime
    quote: str
    score: float
    link: Optional[str] = None

    def format_reference(self) -> str:
        """Format as 'messages #X-#Y (YYYY-MM-DD HH:MM)'."""
        when = self.time_range_start.strftime("%Y-%m-%d %H:%M")
        if self.first_message_id == self.last_message_id:
            ref = f"message #{self.first_message_id} ({when})"
        else:
            ref = f"messages #{self.first_message_id}-#{self.last_message_id} ({when})"
        if self.link:
            ref += f" {self.link}"
        return ref


class ToolInvocation(BaseModel):
    """Audit record of a single tool call made while composing an answer."""
    step: int
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    status: str  # 'ok' | 'timeout' | 'error' | 'unknown_tool'
    result: Optional[str] = None
    error: Optional[str] = None
    elapsed_ms: Optional[float] = None


class RetrievalTrace(BaseModel):
    """
    Trace of a question's path through retrieval and composition.
    """
    query: str
    chat_id: Optional[int] = None
    retrieved_chunks_count: int = 0
    final_chunks_count: int = 0
    retrieval_time_ms: Optional[float] = None
    generation_time_ms: Optional[float] = None
    llm_calls: int = 0
    tool_invocations: List[ToolInvocation] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Answer(BaseModel):
    """
    Grounded answer with citations, or an explicit abstention.

    Citations only ever reference chunks that were passed to the composer.
    """
    text: str
    citations: List[Citation] = Field(default_factory=list)
    abstained: bool = False
    refusal_reason: Optional[str] = None
    trace: Optional[RetrievalTrace] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def has_citations(self) -> bool:
        return len(self.citations) > 0

    def cited_chunk_ids(self) -> List[str]:
        return [c.chunk_id for c in self.citations]

    def format_with_citations(self) -> str:
        """Format answer with a numbered reference list."""
        result = self.text
        if self.citations:
            result += "\n\nReferences:\n"
            for cit in self.citations:
                result += f"[{cit.index}] {cit.format_reference()}\n"
        return result


class ChatStatus(BaseModel):
    """Indexing freshness for one chat."""
    chat_id: int
    pending_work_count: int = 0
    failed_work_count: int = 0
    last_indexed_at: Optional[datetime] = None
    message_count: int = 0
    live_chunk_count: int = 0
    indexed_chunk_count: int = 0
    stale_chunk_count: int = 0
