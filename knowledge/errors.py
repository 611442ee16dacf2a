"""
Error taxonomy for the ingestion-to-retrieval pipeline.
"""
from typing import Any, Dict, Optional


class HistoryError(Exception):
    """Base class for chat history errors."""


class DuplicateEvent(HistoryError):
    """An update or message revision that is already stored."""

    def __init__(self, message: str, key: Optional[str] = None, revision: Optional[int] = None):
        super().__init__(message)
        self.key = key
        self.revision = revision


class TransientCapabilityFailure(HistoryError):
    """An embedding, LLM or tool call failed or timed out; safe to retry."""

    def __init__(self, message: str, capability: str = "unknown"):
        super().__init__(message)
        self.capability = capability


class ExhaustedRetries(HistoryError):
    """A work item passed its attempt ceiling and was marked failed."""

    def __init__(self, message: str, work_id: str, attempt_count: int):
        super().__init__(message)
        self.work_id = work_id
        self.attempt_count = attempt_count


class InvariantViolation(HistoryError):
    """
    A structural guarantee was broken (overlapping chunks, citation outside
    the retrieved set, cross-chat result). Fatal to the operation in progress.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class LeaseLost(HistoryError):
    """A worker tried to finish a work item it no longer owns."""

    def __init__(self, message: str, work_id: str):
        super().__init__(message)
        self.work_id = work_id
