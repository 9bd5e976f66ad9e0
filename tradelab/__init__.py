"""Market data storage, archive loading and an asyncio broadcast channel for back-tests."""

__version__ = "0.1.0"