"""
ProTV — Profile model (the matching criteria of one student).
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from protv.database import Base
from protv.models._types import JSONList, utcnow

SCHOOLS: tuple[str, ...] = (
    "Princeton University",
    "Harvard University",
    "Yale University",
    "Columbia University",
    "Cornell University",
    "Dartmouth College",
    "Brown University",
    "University of Pennsylvania",
)


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    school: Mapped[str] = mapped_column(
        String, nullable=False, comment="One of SCHOOLS"
    )
    major: Mapped[str] = mapped_column(String, nullable=False)
    class_year: Mapped[int] = mapped_column(Integer, nullable=False)
    interests: Mapped[list | None] = mapped_column(
        JSONList, nullable=True, comment="Array of interest strings"
    )
    avatar_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )

    def __repr__(self) -> str:
        return f"<Profile {self.full_name!r} school={self.school!r} id={self.id}>"
