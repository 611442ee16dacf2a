"""
Time-gap chunking of a chat's message stream.

Messages are accumulated left to right and a boundary is placed before a
message when the silence since the previous message reaches the gap threshold,
or when adding the message would exceed the message or token budget. Chunks
below the minimum size are not closed; they absorb the following messages
instead (merge forward), up to a hard ceiling. The trailing accumulator is
returned as an open chunk.

This module is pure: the same input sequence always yields the same chunks,
so a region can be re-chunked after a crash with identical boundaries.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from knowledge.errors import InvariantViolation
from knowledge.models import ChunkCandidate, MessageRecord, ensure_utc
from ingest.normalization.text_normalizer import count_tokens, normalize_message_text, speaker_label


NON_TEXT_PLACEHOLDER = "[non-text message]"


@dataclass(frozen=True)
class ChunkerConfig:
    gap_seconds: float = 15 * 60
    max_messages: int = 80
    max_tokens: int = 1500
    min_messages: int = 3
    # Merge-forward may grow a short chunk past max_* up to this factor.
    hard_ceiling_factor: float = 1.5

    @property
    def hard_max_messages(self) -> int:
        return max(self.max_messages, math.ceil(self.hard_ceiling_factor * self.max_messages))

    @property
    def hard_max_tokens(self) -> int:
        return max(self.max_tokens, math.ceil(self.hard_ceiling_factor * self.max_tokens))


def message_order_key(m: MessageRecord):
    return (ensure_utc(m.timestamp), m.message_id)


def render_message_line(m: MessageRecord) -> str:
    when = ensure_utc(m.timestamp).strftime("%Y-%m-%d %H:%M")
    speaker = speaker_label(m.speaker)
    if m.reply_to_id is not None:
        speaker += f" (reply to #{m.reply_to_id})"
    text = normalize_message_text(m.text) or NON_TEXT_PLACEHOLDER
    return f"[{when}] {speaker}: {text}"


def render_transcript(messages: Sequence[MessageRecord]) -> str:
    return "\n".join(render_message_line(m) for m in messages)


def _make_candidate(chat_id: int, messages: List[MessageRecord], token_count: int, *, is_open: bool) -> ChunkCandidate:
    rendered = render_transcript(messages)
    participants = sorted({speaker_label(m.speaker) for m in messages})
    return ChunkCandidate(
        chat_id=chat_id,
        message_ids=[m.message_id for m in messages],
        first_message_id=messages[0].message_id,
        last_message_id=messages[-1].message_id,
        time_range_start=ensure_utc(messages[0].timestamp),
        time_range_end=ensure_utc(messages[-1].timestamp),
        participants=participants,
        message_count=len(messages),
        token_count=token_count,
        rendered_text=rendered,
        content_hash=hashlib.sha256(rendered.encode("utf-8")).hexdigest(),
        is_open=is_open,
    )


def build_chunks(
    chat_id: int,
    messages: Iterable[MessageRecord],
    cfg: Optional[ChunkerConfig] = None,
) -> List[ChunkCandidate]:
    """
    Split one chat's messages into chunk candidates.

    The last candidate has `is_open=True` unless the stream is empty.
    """
    if cfg is None:
        cfg = ChunkerConfig()

    ordered = sorted(messages, key=message_order_key)
    for m in ordered:
        if m.chat_id != chat_id:
            raise InvariantViolation(
                "message from another chat passed to chunker",
                {"chat_id": chat_id, "message_chat_id": m.chat_id, "message_id": m.message_id},
            )

    out: List[ChunkCandidate] = []
    acc: List[MessageRecord] = []
    acc_tokens = 0
    acc_oversized = False

    for m in ordered:
        m_tokens = count_tokens(m.text)
        m_oversized = m_tokens > cfg.max_tokens

        if acc:
            gap = (ensure_utc(m.timestamp) - ensure_utc(acc[-1].timestamp)).total_seconds()
            triggered = (
                gap >= cfg.gap_seconds
                or len(acc) + 1 > cfg.max_messages
                or acc_tokens + m_tokens > cfg.max_tokens
            )
            forced = (
                len(acc) + 1 > cfg.hard_max_messages
                or acc_tokens + m_tokens > cfg.hard_max_tokens
                # An oversized message always stands alone.
                or m_oversized
                or acc_oversized
            )
            if forced or (triggered and len(acc) >= cfg.min_messages):
                out.append(_make_candidate(chat_id, acc, acc_tokens, is_open=False))
                acc = []
                acc_tokens = 0
                acc_oversized = False

        acc.append(m)
        acc_tokens += m_tokens
        acc_oversized = acc_oversized or m_oversized

    if acc:
        out.append(_make_candidate(chat_id, acc, acc_tokens, is_open=True))

    return out
