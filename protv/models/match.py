"""
ProTV — Match and ChatMessage models.

A Match is never deleted; it only moves from ``active`` to ``ended``.
"""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from protv.database import Base
from protv.models._types import utcnow

MATCH_ACTIVE = "active"
MATCH_ENDED = "ended"


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        CheckConstraint("user1_id <> user2_id", name="ck_match_distinct_users"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    room_id: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    user1_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user2_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), index=True, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String, default=MATCH_ACTIVE, server_default=MATCH_ACTIVE, nullable=False,
        comment="active / ended",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def involves(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def counterpart_of(self, user_id: uuid.UUID) -> uuid.UUID:
        """Return the other participant, or raise if *user_id* is not one."""
        if user_id == self.user1_id:
            return self.user2_id
        if user_id == self.user2_id:
            return self.user1_id
        raise ValueError(f"User {user_id} is not part of match {self.id}")

    def __repr__(self) -> str:
        return (
            f"<Match {self.room_id} {self.user1_id} <-> {self.user2_id} "
            f"status={self.status!r}>"
        )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("matches.id", ondelete="CASCADE"), index=True, nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    match: Mapped["Match"] = relationship("Match")

    def __repr__(self) -> str:
        return f"<ChatMessage match={self.match_id} sender={self.sender_id}>"
