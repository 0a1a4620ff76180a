from pydantic import BaseModel, Field, field_validator
from uuid import UUID
from datetime import datetime
from typing import Optional

from protv.models.profile import SCHOOLS


class ProfileCreate(BaseModel):
    id: Optional[UUID] = None  # auth user id, when the caller already has one
    email: str
    full_name: str = Field(min_length=1)
    school: str
    major: str = Field(min_length=1)
    class_year: int = Field(ge=1900, le=2200)
    interests: list[str] = []
    avatar_url: Optional[str] = None

    @field_validator("school")
    @classmethod
    def _known_school(cls, v: str) -> str:
        if v not in SCHOOLS:
            raise ValueError(f"Unknown school {v!r}")
        return v


class ProfileResponse(BaseModel):
    id: UUID
    full_name: str
    school: str
    major: str
    class_year: int
    interests: Optional[list[str]] = None
    avatar_url: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}
