"""
ProTV — Waiting pool.

The ``queue`` table holds at most one ``waiting`` ticket per user.

``enter`` replaces any previous ticket (delete-then-insert in one
transaction), ends any match the user is still marked ``active`` in, and then
runs a pairing attempt on the user's behalf.  ``leave`` is an idempotent
delete.  Every change is published on the ``queue`` table so that live
"N people in queue" counters can refresh without polling.

The party that did NOT run the pairing learns about its match through
``subscribe_to_match_insert``.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from protv.errors import NotFoundError
from protv.models.match import Match
from protv.models.profile import Profile
from protv.models.queue import TICKET_WAITING, WaitingTicket
from protv.schemas.queue import QueueFilters
from protv.services.match_service import MatchService
from protv.services.pairing_service import PairingService
from protv.services.realtime_service import (
    DELETE,
    INSERT,
    ChangeEvent,
    RealtimeNotifier,
    Subscription,
    watch,
)

logger = structlog.get_logger("protv.waiting_pool")


def ticket_row(ticket: WaitingTicket) -> dict:
    return {"user_id": str(ticket.user_id), "status": ticket.status}


class WaitingPoolService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: RealtimeNotifier,
        match_service: MatchService,
        pairing_service: PairingService,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._match_service = match_service
        self._pairing = pairing_service

    # ── Mutations ───────────────────────────────────────────────────

    async def add_ticket(
        self,
        user_id: uuid.UUID,
        filters: QueueFilters | None = None,
    ) -> WaitingTicket:
        """Write a fresh ``waiting`` ticket, replacing any previous one."""
        filters = filters or QueueFilters()
        log = logger.bind(user_id=str(user_id))

        for attempt in (1, 2):
            try:
                ticket, ended, replaced = await self._write_ticket(user_id, filters)
                break
            except IntegrityError:
                # A concurrent enter for the same user inserted first.
                if attempt == 2:
                    raise
                log.info("queue_enter_retry_after_duplicate")

        log.info(
            "queue_entered",
            replaced=replaced,
            schools=filters.schools,
            class_years=filters.class_years,
            majors=filters.majors,
        )

        await self._match_service.publish_ended(ended)
        if replaced:
            await self._notifier.publish("queue", DELETE, ticket_row(ticket))
        await self._notifier.publish("queue", INSERT, ticket_row(ticket))
        return ticket

    async def _write_ticket(
        self,
        user_id: uuid.UUID,
        filters: QueueFilters,
    ) -> tuple[WaitingTicket, list[Match], int]:
        async with self._session_factory() as session:
            async with session.begin():
                if await session.get(Profile, user_id) is None:
                    raise NotFoundError(
                        f"Profile {user_id} not found.", code="PROFILE_NOT_FOUND"
                    )

                # The delete waits on any in-flight pairing claim for this
                # ticket, so the active-match read below sees its match.
                result = await session.execute(
                    delete(WaitingTicket)
                    .where(WaitingTicket.user_id == user_id)
                    .execution_options(synchronize_session=False)
                )
                replaced = result.rowcount

                ended = await self._match_service.end_active_for_user(session, user_id)

                ticket = WaitingTicket(
                    user_id=user_id,
                    school_filter=filters.schools or None,
                    class_year_filter=filters.class_years or None,
                    major_filter=filters.majors or None,
                    status=TICKET_WAITING,
                )
                session.add(ticket)
        return ticket, ended, replaced

    async def enter(
        self,
        user_id: uuid.UUID,
        filters: QueueFilters | None = None,
    ) -> tuple[WaitingTicket, Match | None]:
        """Join the pool and immediately try to pair.

        Returns the written ticket and, when pairing succeeded, the Match.
        """
        ticket = await self.add_ticket(user_id, filters)
        match = await self._pairing.try_pair(user_id)
        return ticket, match

    async def leave(self, user_id: uuid.UUID) -> bool:
        """Delete the user's ticket; ``False`` when there was none."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(WaitingTicket)
                    .where(WaitingTicket.user_id == user_id)
                    .execution_options(synchronize_session=False)
                )
                removed = result.rowcount > 0
        logger.info("queue_left", user_id=str(user_id), removed=removed)
        if removed:
            await self._notifier.publish(
                "queue", DELETE, {"user_id": str(user_id), "status": TICKET_WAITING}
            )
        return removed

    # ── Reads ───────────────────────────────────────────────────────

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(WaitingTicket)
                .where(WaitingTicket.status == TICKET_WAITING)
            )
            return int(result.scalar_one())

    async def get_ticket(self, user_id: uuid.UUID) -> WaitingTicket | None:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(WaitingTicket).where(
                        WaitingTicket.user_id == user_id,
                        WaitingTicket.status == TICKET_WAITING,
                    )
                )
            ).scalar_one_or_none()

    # ── Subscriptions ───────────────────────────────────────────────

    def subscribe_to_count(self) -> Subscription:
        """Any insert/delete on the pool; re-read ``count()`` on each event."""
        return self._notifier.subscribe("queue")

    def subscribe_to_match_insert(
        self,
        user_id: uuid.UUID,
        callback: Callable[[dict], Awaitable[None]],
    ) -> "MatchWatch":
        """Call *callback* once per new Match row that involves *user_id*."""
        uid = str(user_id)
        sub = self._notifier.subscribe(
            "matches",
            lambda row: uid in (row["user1_id"], row["user2_id"]),
            events={INSERT},
        )

        async def _deliver(change: ChangeEvent) -> None:
            await callback(change.row)

        task = watch(sub, _deliver, key=lambda change: change.row["id"])
        return MatchWatch(sub, task)


class MatchWatch:
    """Handle returned by ``subscribe_to_match_insert``."""

    def __init__(self, subscription: Subscription, task: asyncio.Task) -> None:
        self.subscription = subscription
        self.task = task

    async def close(self) -> None:
        self.subscription.close()
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass


class QueueSession:
    """Queue screen runtime for one connected client.

    Merges the two "you were paired" signals (direct pairing result and the
    match-insert subscription) so the client is sent into each room exactly
    once, and pushes the live pool count.
    """

    def __init__(
        self,
        user_id: uuid.UUID,
        pool: WaitingPoolService,
        emit: Callable[[dict], Awaitable[None]],
    ) -> None:
        self.user_id = user_id
        self._pool = pool
        self._emit = emit
        self._seen_rooms: set[str] = set()
        self._match_watch: Optional[MatchWatch] = None
        self._count_sub: Optional[Subscription] = None
        self._count_task: Optional[asyncio.Task] = None
        self.in_queue = False

    async def start(self) -> None:
        self._match_watch = self._pool.subscribe_to_match_insert(
            self.user_id, self._on_match_row
        )
        self._count_sub = self._pool.subscribe_to_count()
        self._count_task = asyncio.create_task(self._pump_count())

        ticket = await self._pool.get_ticket(self.user_id)
        self.in_queue = ticket is not None
        await self._emit_count()

    async def close(self) -> None:
        if self._match_watch is not None:
            await self._match_watch.close()
            self._match_watch = None
        if self._count_sub is not None:
            self._count_sub.close()
        if self._count_task is not None:
            self._count_task.cancel()
            try:
                await self._count_task
            except asyncio.CancelledError:
                pass
            self._count_task = None

    async def enter(self, filters: QueueFilters | None = None) -> Match | None:
        ticket, match = await self._pool.enter(self.user_id, filters)
        self.in_queue = match is None
        await self._emit({"type": "queued", "user_id": str(ticket.user_id)})
        if match is not None:
            await self._on_paired(match.room_id)
        return match

    async def leave(self) -> None:
        await self._pool.leave(self.user_id)
        self.in_queue = False
        await self._emit({"type": "left"})

    # ── Signals ─────────────────────────────────────────────────────

    async def _on_match_row(self, row: dict) -> None:
        await self._on_paired(row["room_id"])

    async def _on_paired(self, room_id: str) -> None:
        if room_id in self._seen_rooms:
            return
        self._seen_rooms.add(room_id)
        self.in_queue = False
        logger.info("queue_session_matched", user_id=str(self.user_id), room_id=room_id)
        await self._emit({"type": "matched", "room_id": room_id})

    async def _emit_count(self) -> None:
        await self._emit({"type": "queue_count", "count": await self._pool.count()})

    async def _pump_count(self) -> None:
        async for _ in self._count_sub:
            await self._emit_count()
