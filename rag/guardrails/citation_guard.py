"""
Citation guard - makes citation soundness structural.

The model's [n] markers are resolved against the list of retrieved chunks
that was actually given to it. Markers that do not resolve are removed from
the text and never become citations, so an answer can only cite what was
retrieved.
"""
import re
import logging
from typing import List, Optional, Set

from knowledge.errors import InvariantViolation
from knowledge.models import Answer, Citation, RetrievalTrace, RetrievedChunk, message_link
from rag.generators.prompts import NO_ANSWER_TOKEN


logger = logging.getLogger(__name__)

NO_HISTORY_TEXT = "No relevant history found for this question."

_RE_MARKER = re.compile(r"\[(\d+)\]")
_RE_SPACE_BEFORE_PUNCT = re.compile(r"[ \t]+([.,;:!?])")

_RE_FIRST_SENTENCE = re.compile(r"^[^.!?\n]*")

REFUSAL_PHRASES = [
    "cannot answer",
    "don't have enough information",
    "insufficient information",
    "no information about",
    "unable to answer",
    "not mentioned in the chat",
]


def abstention(
    question: str,
    reason: str,
    trace: Optional[RetrievalTrace] = None,
    metadata: Optional[dict] = None,
) -> Answer:
    """Neutral no-answer response; never carries citations."""
    return Answer(
        text=NO_HISTORY_TEXT,
        citations=[],
        abstained=True,
        refusal_reason=reason,
        trace=trace or RetrievalTrace(query=question),
        metadata=metadata or {},
    )


def verify_citations(citations: List[Citation], chunks: List[RetrievedChunk]) -> None:
    """Raise InvariantViolation if a citation points outside `chunks`."""
    allowed: Set[str] = {r.chunk.chunk_id for r in chunks}
    for cit in citations:
        if cit.chunk_id not in allowed:
            raise InvariantViolation(
                f"citation [{cit.index}] references unretrieved chunk {cit.chunk_id}",
                {"chunk_id": cit.chunk_id, "allowed": sorted(allowed)},
            )


class CitationGuard:
    def __init__(self, require_citations: bool = True, quote_chars: int = 200):
        """
        Args:
            require_citations: Abstain when no marker resolves to a chunk
            quote_chars: Length of the excerpt quoted in each citation
        """
        self.require_citations = require_citations
        self.quote_chars = quote_chars

    def extract_markers(self, text: str) -> List[int]:
        return sorted(set(int(m) for m in _RE_MARKER.findall(text or "")))

    def detect_refusal(self, text: str, num_chunks: Optional[int] = None) -> bool:
        """
        True for empty output, the NO_ANSWER token, or an uncited answer whose
        first sentence is a refusal. Refusal wording quoted inside a cited
        answer does not count.
        """
        stripped = (text or "").strip()
        if not stripped or stripped.upper().startswith(NO_ANSWER_TOKEN):
            return True
        markers = self.extract_markers(stripped)
        if num_chunks is not None:
            markers = [n for n in markers if 1 <= n <= num_chunks]
        if markers:
            return False
        first = _RE_FIRST_SENTENCE.match(stripped.lower()).group(0)
        return any(phrase in first for phrase in REFUSAL_PHRASES)

    def _strip_markers(self, text: str, invalid: Set[int]) -> str:
        cleaned = _RE_MARKER.sub(lambda m: "" if int(m.group(1)) in invalid else m.group(0), text)
        return _RE_SPACE_BEFORE_PUNCT.sub(r"\1", cleaned).strip()

    def _build_citation(self, index: int, retrieved: RetrievedChunk) -> Citation:
        chunk = retrieved.chunk
        quote = chunk.rendered_text[: self.quote_chars].strip()
        if len(chunk.rendered_text) > self.quote_chars:
            quote += "..."
        return Citation(
            index=index,
            chunk_id=chunk.chunk_id,
            chat_id=chunk.chat_id,
            first_message_id=chunk.first_message_id,
            last_message_id=chunk.last_message_id,
            time_range_start=chunk.time_range_start,
            time_range_end=chunk.time_range_end,
            quote=quote,
            score=retrieved.score,
            link=message_link(chunk.chat_id, chunk.first_message_id),
        )

    def apply(
        self,
        question: str,
        text: str,
        chunks: List[RetrievedChunk],
        trace: Optional[RetrievalTrace] = None,
        metadata: Optional[dict] = None,
    ) -> Answer:
        """
        Turn raw model output into an Answer whose citations all resolve to
        `chunks` (the context given to the model, in prompt order).
        """
        metadata = dict(metadata or {})

        if self.detect_refusal(text, len(chunks)):
            return abstention(question, "insufficient_context", trace, metadata)

        markers = self.extract_markers(text)
        valid = [n for n in markers if 1 <= n <= len(chunks)]
        invalid = set(markers) - set(valid)
        if invalid:
            logger.warning(f"Dropping citation markers outside the retrieved set: {sorted(invalid)}")
            text = self._strip_markers(text, invalid)
            metadata["dropped_markers"] = sorted(invalid)

        citations = [self._build_citation(n, chunks[n - 1]) for n in valid]
        verify_citations(citations, chunks)

        if self.require_citations and not citations:
            logger.info("Answer has no resolvable citations - abstaining")
            return abstention(question, "ungrounded", trace, metadata)

        metadata["num_citations"] = len(citations)
        return Answer(
            text=text,
            citations=citations,
            abstained=False,
            trace=trace,
            metadata=metadata,
        )
