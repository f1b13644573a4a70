"""
External Integrations
"""

from .firestore_client import FirestoreClient, FirestoreConfig, StoreBackend, TransactionManager
from .messaging import LoggingMessageSender, MessageSender, OutboundMessage

__all__ = [
    "FirestoreClient",
    "FirestoreConfig",
    "StoreBackend",
    "TransactionManager",
    "LoggingMessageSender",
    "MessageSender",
    "OutboundMessage"
]
