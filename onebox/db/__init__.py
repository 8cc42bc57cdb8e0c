"""Primary store: ORM models, engine and repositories."""

from .engine import Database
from .models import Account, Base, KnowledgeDocument, Message, NotificationRecord
from .store import AccountStore, FeedPage, KnowledgeStore, MessageStore, NotificationLog

__all__ = [
    "Account",
    "AccountStore",
    "Base",
    "Database",
    "FeedPage",
    "KnowledgeDocument",
    "KnowledgeStore",
    "Message",
    "MessageStore",
    "NotificationLog",
    "NotificationRecord",
]
