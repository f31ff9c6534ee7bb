"""Conversational email agent: live IMAP ingestion, memory batching and replies."""

__version__ = "0.1.0"
