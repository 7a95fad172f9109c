"""SQLite persistence for rentals and messages, plus the read-through cache."""

from smssync.storage.cache import ReadThroughCache, catalog_key, messages_key, rentals_key
from smssync.storage.database import DEFAULT_DB_PATH, create_schema, open_db
from smssync.storage.messages import MessageStore, UpsertResult
from smssync.storage.rentals import RentalRegistry

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
    "RentalRegistry",
    "MessageStore",
    "UpsertResult",
    "ReadThroughCache",
    "rentals_key",
    "catalog_key",
    "messages_key",
]
