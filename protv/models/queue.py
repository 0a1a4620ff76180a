"""
ProTV — WaitingTicket model (one row per user currently in the queue).
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from protv.database import Base
from protv.models._types import JSONList, utcnow

TICKET_WAITING = "waiting"


class WaitingTicket(Base):
    __tablename__ = "queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("profiles.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    school_filter: Mapped[list | None] = mapped_column(
        JSONList, nullable=True, comment="NULL = any school"
    )
    class_year_filter: Mapped[list | None] = mapped_column(
        JSONList, nullable=True, comment="NULL = any class year"
    )
    major_filter: Mapped[list | None] = mapped_column(
        JSONList, nullable=True, comment="NULL = any major"
    )
    status: Mapped[str] = mapped_column(
        String, default=TICKET_WAITING, server_default=TICKET_WAITING, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<WaitingTicket user={self.user_id} status={self.status!r}>"
