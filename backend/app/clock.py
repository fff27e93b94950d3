"""Timestamp helper shared by schemas and services."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (DuckDB TIMESTAMP columns are naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
