"""
Guardrails - citation soundness and abstention.
"""
from rag.guardrails.citation_guard import CitationGuard, abstention, verify_citations

__all__ = ['CitationGuard', 'abstention', 'verify_citations']
