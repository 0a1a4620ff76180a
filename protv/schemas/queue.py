from pydantic import BaseModel, field_validator
from uuid import UUID
from datetime import datetime
from typing import Optional

from protv.models.profile import SCHOOLS
from protv.schemas.match import MatchResponse


class QueueFilters(BaseModel):
    """Optional matching criteria; an empty list means "anyone"."""

    schools: list[str] = []
    class_years: list[int] = []
    majors: list[str] = []

    @field_validator("schools")
    @classmethod
    def _known_schools(cls, v: list[str]) -> list[str]:
        unknown = [s for s in v if s not in SCHOOLS]
        if unknown:
            raise ValueError(f"Unknown schools: {unknown}")
        return list(dict.fromkeys(v))

    @field_validator("class_years")
    @classmethod
    def _dedupe_years(cls, v: list[int]) -> list[int]:
        return list(dict.fromkeys(v))

    @field_validator("majors")
    @classmethod
    def _clean_majors(cls, v: list[str]) -> list[str]:
        cleaned = [m.strip() for m in v if m and m.strip()]
        return list(dict.fromkeys(cleaned))


class QueueEnterRequest(BaseModel):
    user_id: UUID
    filters: QueueFilters = QueueFilters()


class QueueLeaveRequest(BaseModel):
    user_id: UUID


class TicketResponse(BaseModel):
    user_id: UUID
    status: str
    school_filter: Optional[list[str]] = None
    class_year_filter: Optional[list[int]] = None
    major_filter: Optional[list[str]] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class QueueEnterResponse(BaseModel):
    ticket: Optional[TicketResponse] = None
    match: Optional[MatchResponse] = None


class QueueStatusResponse(BaseModel):
    in_queue: bool
    ticket: Optional[TicketResponse] = None


class QueueCountResponse(BaseModel):
    count: int
