"""
ProTV — Post-match connections.

Connecting is immediately ``accepted``; there is no pending state.  A pair
of users holds at most one connection row regardless of who clicked first,
so both orderings are checked before inserting.
"""

from __future__ import annotations

import asyncio
import uuid

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from protv.models.connection import CONNECTION_ACCEPTED, Connection
from protv.models.match import Match
from protv.models.profile import Profile
from protv.services.match_service import MatchService

logger = structlog.get_logger("protv.connection_service")


def _pair_clause(user_a: uuid.UUID, user_b: uuid.UUID):
    return or_(
        and_(Connection.user1_id == user_a, Connection.user2_id == user_b),
        and_(Connection.user1_id == user_b, Connection.user2_id == user_a),
    )


class ConnectionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        match_service: MatchService,
    ) -> None:
        self._session_factory = session_factory
        self._match_service = match_service
        self._lock = asyncio.Lock()

    async def find(self, user_a: uuid.UUID, user_b: uuid.UUID) -> Connection | None:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(Connection).where(_pair_clause(user_a, user_b)).limit(1)
                )
            ).scalar_one_or_none()

    async def status(self, user_a: uuid.UUID, user_b: uuid.UUID) -> str | None:
        connection = await self.find(user_a, user_b)
        return connection.status if connection else None

    async def connect(self, match: Match, user_id: uuid.UUID) -> tuple[Connection, bool]:
        """Connect the two participants of *match*.

        Returns ``(connection, created)``; an existing row for the pair (in
        either order) is returned unchanged.
        """
        self._match_service.ensure_participant(match, user_id)
        other_id = match.counterpart_of(user_id)
        log = logger.bind(user_id=str(user_id), partner_id=str(other_id))

        async with self._lock:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = (
                        await session.execute(
                            select(Connection)
                            .where(_pair_clause(user_id, other_id))
                            .limit(1)
                        )
                    ).scalar_one_or_none()
                    if existing is not None:
                        log.info("connection_exists", connection_id=str(existing.id))
                        return existing, False

                    connection = Connection(
                        user1_id=user_id,
                        user2_id=other_id,
                        status=CONNECTION_ACCEPTED,
                    )
                    session.add(connection)

        log.info("connection_created", connection_id=str(connection.id))
        return connection, True

    async def list_for_user(self, user_id: uuid.UUID) -> list[tuple[Connection, Profile]]:
        """Accepted connections of *user_id* with the partner's profile."""
        async with self._session_factory() as session:
            connections = (
                await session.execute(
                    select(Connection)
                    .where(
                        Connection.status == CONNECTION_ACCEPTED,
                        or_(Connection.user1_id == user_id, Connection.user2_id == user_id),
                    )
                    .order_by(Connection.created_at.desc())
                )
            ).scalars().all()

            partner_ids = [c.partner_of(user_id) for c in connections]
            profiles = {
                p.id: p
                for p in (
                    await session.execute(select(Profile).where(Profile.id.in_(partner_ids)))
                ).scalars()
            } if partner_ids else {}

        return [
            (c, profiles[c.partner_of(user_id)])
            for c in connections
            if c.partner_of(user_id) in profiles
        ]
