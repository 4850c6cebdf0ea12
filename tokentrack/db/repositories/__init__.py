"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .conversations import SqliteConversationRepository
from .snapshots import SqliteSnapshotRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteConversationRepository",
    "SqliteSnapshotRepository",
]
