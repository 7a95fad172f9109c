"""SMS Sync: rent virtual numbers from several SMS providers and keep their inboxes in sync."""

__version__ = "0.1.0"
