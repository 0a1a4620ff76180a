"""
ProTV — Profiles API

Profile creation (seeding) and lookup.  The matching criteria of a user are
their school, class year and major.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from protv.database import get_db
from protv.models.profile import Profile
from protv.schemas.profile import ProfileCreate, ProfileResponse

logger = structlog.get_logger("protv.api.profiles")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST / — Create a profile
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/",
    response_model=ProfileResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a profile",
)
async def create_profile(
    payload: ProfileCreate,
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """Register a student profile.

    Rejects a duplicate email (or a duplicate id when the caller supplies one)
    with 409.
    """
    log = logger.bind(email=payload.email)
    log.info("create_profile_start")

    stmt = select(Profile).where(Profile.email == payload.email)
    if (await db.execute(stmt)).scalar_one_or_none() is not None:
        log.warning("create_profile_duplicate_email")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A profile with this email already exists.",
        )
    if payload.id is not None and await db.get(Profile, payload.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Profile {payload.id} already exists.",
        )

    profile = Profile(
        email=payload.email,
        full_name=payload.full_name,
        school=payload.school,
        major=payload.major.strip(),
        class_year=payload.class_year,
        interests=payload.interests,
        avatar_url=payload.avatar_url,
    )
    if payload.id is not None:
        profile.id = payload.id
    db.add(profile)
    await db.flush()

    log.info("create_profile_complete", user_id=str(profile.id))
    return profile


# ──────────────────────────────────────────────────────────────────────────────
# GET /{user_id} — Fetch a profile
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{user_id}",
    response_model=ProfileResponse,
    summary="Get a profile",
)
async def get_profile(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> Profile:
    profile = await db.get(Profile, user_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Profile {user_id} not found.",
        )
    return profile
