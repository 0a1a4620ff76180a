"""
ProTV — Match lifecycle.

    active ──(skip | report | leave)──> ended

``ended`` is terminal.  Ending is a conditional update
(``WHERE status = 'active'``), so calling it twice, or from both
participants at once, stamps ``ended_at`` exactly once and never errors.
"""

from __future__ import annotations

import uuid
from typing import Sequence

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from protv.errors import ForbiddenError, NotFoundError
from protv.models._types import utcnow
from protv.models.match import MATCH_ACTIVE, MATCH_ENDED, Match
from protv.models.profile import Profile
from protv.schemas.match import MatchResponse
from protv.services.realtime_service import INSERT, UPDATE, RealtimeNotifier, Subscription

logger = structlog.get_logger("protv.match_service")


def match_row(match: Match) -> dict:
    """JSON-compatible row used for realtime events."""
    return MatchResponse.model_validate(match).model_dump(mode="json")


class MatchService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: RealtimeNotifier,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier

    # ── Lookups ─────────────────────────────────────────────────────

    async def get_by_room(self, room_id: str) -> Match:
        async with self._session_factory() as session:
            match = (
                await session.execute(select(Match).where(Match.room_id == room_id))
            ).scalar_one_or_none()
        if match is None:
            raise NotFoundError(f"Match for room {room_id} not found.", code="MATCH_NOT_FOUND")
        return match

    async def get_active_by_room(self, room_id: str) -> Match:
        """The ``active`` match behind *room_id*, or ``NotFoundError``."""
        async with self._session_factory() as session:
            match = (
                await session.execute(
                    select(Match).where(
                        Match.room_id == room_id,
                        Match.status == MATCH_ACTIVE,
                    )
                )
            ).scalar_one_or_none()
        if match is None:
            raise NotFoundError(
                f"No active match for room {room_id}.", code="MATCH_NOT_FOUND"
            )
        return match

    async def get_for_participant(self, room_id: str, user_id: uuid.UUID) -> Match:
        match = await self.get_by_room(room_id)
        self.ensure_participant(match, user_id)
        return match

    @staticmethod
    def ensure_participant(match: Match, user_id: uuid.UUID) -> None:
        if not match.involves(user_id):
            raise ForbiddenError(f"User {user_id} is not part of room {match.room_id}.")

    async def active_for_user(self, user_id: uuid.UUID) -> Sequence[Match]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Match).where(
                    Match.status == MATCH_ACTIVE,
                    or_(Match.user1_id == user_id, Match.user2_id == user_id),
                )
            )
            return result.scalars().all()

    async def latest_between(self, user_a: uuid.UUID, user_b: uuid.UUID) -> Match:
        """Most recent match (any status) between two users."""
        async with self._session_factory() as session:
            match = (
                await session.execute(
                    select(Match)
                    .where(
                        or_(
                            and_(Match.user1_id == user_a, Match.user2_id == user_b),
                            and_(Match.user1_id == user_b, Match.user2_id == user_a),
                        )
                    )
                    .order_by(Match.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        if match is None:
            raise NotFoundError(
                f"No match between {user_a} and {user_b}.", code="MATCH_NOT_FOUND"
            )
        return match

    async def counterpart_profile(self, match: Match, user_id: uuid.UUID) -> Profile | None:
        other_id = match.counterpart_of(user_id)
        async with self._session_factory() as session:
            return await session.get(Profile, other_id)

    # ── Transitions ─────────────────────────────────────────────────

    async def end_match(self, match_id: uuid.UUID) -> Match:
        """Move the match to ``ended``; idempotent."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Match)
                    .where(Match.id == match_id, Match.status == MATCH_ACTIVE)
                    .values(status=MATCH_ENDED, ended_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                transitioned = result.rowcount == 1
            match = await session.get(Match, match_id, populate_existing=True)

        if match is None:
            raise NotFoundError(f"Match {match_id} not found.", code="MATCH_NOT_FOUND")

        if transitioned:
            logger.info("match_ended", match_id=str(match_id), room_id=match.room_id)
            await self._notifier.publish("matches", UPDATE, match_row(match))
        else:
            logger.debug("match_already_ended", match_id=str(match_id))
        return match

    async def end_active_for_user(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
    ) -> list[Match]:
        """End every active match of *user_id* inside the caller's transaction.

        The caller publishes the returned rows after committing.
        """
        stale = (
            await session.execute(
                select(Match).where(
                    Match.status == MATCH_ACTIVE,
                    or_(Match.user1_id == user_id, Match.user2_id == user_id),
                )
            )
        ).scalars().all()
        now = utcnow()
        for match in stale:
            match.status = MATCH_ENDED
            match.ended_at = now
        if stale:
            await session.flush()
            logger.info(
                "stale_matches_ended",
                user_id=str(user_id),
                count=len(stale),
            )
        return list(stale)

    async def publish_created(self, match: Match) -> None:
        await self._notifier.publish("matches", INSERT, match_row(match))

    async def publish_ended(self, matches: Sequence[Match]) -> None:
        for match in matches:
            await self._notifier.publish("matches", UPDATE, match_row(match))

    def subscribe_to_end(self, match_id: uuid.UUID) -> Subscription:
        """Fires when the match with *match_id* moves to ``ended``."""
        mid = str(match_id)
        return self._notifier.subscribe(
            "matches",
            lambda row: row["id"] == mid and row["status"] == MATCH_ENDED,
            events={UPDATE},
        )
