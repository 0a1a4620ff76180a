"""
ProTV — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from protv.models.profile import Profile
from protv.models.queue import WaitingTicket
from protv.models.match import ChatMessage, Match
from protv.models.connection import Connection
from protv.models.report import Report

__all__ = [
    "Profile",
    "WaitingTicket",
    "Match",
    "ChatMessage",
    "Connection",
    "Report",
]
