"""
Telegram feed for chat history indexing.

Records group messages and edits; indexing runs on a worker pool in the
same process.
"""

__version__ = "0.1.0"
