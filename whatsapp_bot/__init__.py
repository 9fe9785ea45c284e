"""WhatsApp bot backend: webhook ingestion, command responses and dashboard stats."""

__version__ = "1.0.0"
