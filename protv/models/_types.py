"""
ProTV — Column types shared by the ORM models.

Postgres gets native JSONB; SQLite (tests) falls back to generic JSON.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

JSONList = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
