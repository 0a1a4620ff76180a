"""
ProTV — Pairing engine.

Turns two compatible waiting tickets into one active Match.

Algorithm (on behalf of one caller):
  1. Load the caller's ``waiting`` ticket and profile.  No ticket -> nothing
     to do (already paired, or left the queue).
  2. Scan other ``waiting`` tickets with their owners' profiles, oldest first,
     bounded by ``PAIRING_CANDIDATE_LIMIT``.
  3. Keep the first candidate that passes the filter predicate in both
     directions.
  4. Claim: in ONE transaction, delete both tickets conditionally
     (``status = 'waiting'``), check that neither user is still in an
     ``active`` match, and insert the Match.  Anything other than two
     deleted rows, or a busy user, means another caller won the race; the transaction rolls
     back (restoring our own ticket) and the attempt is retried from step 1.

Attempts within one process are additionally serialised behind an
``asyncio.Lock``.  The conditional claim is what keeps several worker
processes sharing one database correct.
"""

from __future__ import annotations

import asyncio
import secrets
import string
import time
import uuid
from typing import Any

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from protv.config import get_settings
from protv.errors import ConflictError
from protv.models.match import MATCH_ACTIVE, Match
from protv.models.profile import Profile
from protv.models.queue import TICKET_WAITING, WaitingTicket
from protv.services.filter_service import FilterService
from protv.services.match_service import MatchService
from protv.services.realtime_service import DELETE, RealtimeNotifier

logger = structlog.get_logger("protv.pairing_service")

_ROOM_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_ROOM_SUFFIX_LENGTH = 9


def generate_room_id(now_ms: int | None = None) -> str:
    """``room_<millisecond timestamp>_<9 random base-36 chars>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(
        secrets.choice(_ROOM_SUFFIX_ALPHABET) for _ in range(_ROOM_SUFFIX_LENGTH)
    )
    return f"room_{now_ms}_{suffix}"


class PairingService:
    """Find and commit a pairing for one waiting user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: RealtimeNotifier,
        match_service: MatchService,
        filter_service: FilterService | None = None,
        *,
        candidate_limit: int | None = None,
        max_attempts: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._notifier = notifier
        self._match_service = match_service
        self.filters = filter_service or FilterService()
        self.candidate_limit = candidate_limit or settings.PAIRING_CANDIDATE_LIMIT
        self.max_attempts = max_attempts or settings.PAIRING_MAX_ATTEMPTS
        self._lock = asyncio.Lock()

    # ── Public API ──────────────────────────────────────────────────

    async def try_pair(self, user_id: uuid.UUID) -> Match | None:
        """Attempt to pair *user_id*.

        Returns the new Match, or ``None`` when the caller should keep
        waiting (no compatible candidate, no ticket, or every attempt lost a
        race).
        """
        log = logger.bind(user_id=str(user_id))

        async with self._lock:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    match = await self._attempt(user_id)
                except ConflictError as exc:
                    log.info("pairing_claim_conflict", attempt=attempt, reason=exc.message)
                    continue

                if match is not None:
                    await self._announce(match)
                return match

        log.info("pairing_attempts_exhausted", attempts=self.max_attempts)
        return None

    # ── Internals ───────────────────────────────────────────────────

    async def _attempt(self, user_id: uuid.UUID) -> Match | None:
        log = logger.bind(user_id=str(user_id))

        async with self._session_factory() as session:
            async with session.begin():
                own = (
                    await session.execute(
                        select(WaitingTicket, Profile)
                        .join(Profile, Profile.id == WaitingTicket.user_id)
                        .where(
                            WaitingTicket.user_id == user_id,
                            WaitingTicket.status == TICKET_WAITING,
                        )
                    )
                ).first()
                if own is None:
                    log.info("pairing_skipped_no_ticket")
                    return None
                own_ticket, own_profile = own

                partner = await self._select_candidate(
                    session, own_ticket, own_profile
                )
                if partner is None:
                    log.info("pairing_no_candidate")
                    return None

                # Raising inside the ``begin()`` block rolls everything back.
                match = await self._claim(session, user_id, partner.user_id)

        log.info(
            "pairing_committed",
            partner_id=str(match.user2_id),
            match_id=str(match.id),
            room_id=match.room_id,
        )
        return match

    async def _select_candidate(
        self,
        session: AsyncSession,
        own_ticket: WaitingTicket,
        own_profile: Profile,
    ) -> WaitingTicket | None:
        rows = (
            await session.execute(
                select(WaitingTicket, Profile)
                .join(Profile, Profile.id == WaitingTicket.user_id)
                .where(
                    WaitingTicket.status == TICKET_WAITING,
                    WaitingTicket.user_id != own_ticket.user_id,
                )
                .order_by(WaitingTicket.created_at.asc(), WaitingTicket.id.asc())
                .limit(self.candidate_limit)
            )
        ).all()

        for ticket, profile in rows:
            if self.filters.mutually_compatible(
                own_ticket, own_profile, ticket, profile
            ):
                return ticket
            logger.debug(
                "pairing_candidate_rejected",
                user_id=str(own_ticket.user_id),
                candidate_id=str(ticket.user_id),
                **self.filters.explain(own_ticket, own_profile, ticket, profile),
            )
        return None

    async def _claim(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        partner_id: uuid.UUID,
    ) -> Match:
        result = await session.execute(
            delete(WaitingTicket)
            .where(
                WaitingTicket.user_id.in_([user_id, partner_id]),
                WaitingTicket.status == TICKET_WAITING,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 2:
            raise ConflictError(
                f"Expected to claim 2 tickets, claimed {result.rowcount}"
            )

        busy = (
            await session.execute(
                select(Match.id)
                .where(
                    Match.status == MATCH_ACTIVE,
                    or_(
                        Match.user1_id.in_([user_id, partner_id]),
                        Match.user2_id.in_([user_id, partner_id]),
                    ),
                )
                .limit(1)
            )
        ).first()
        if busy is not None:
            raise ConflictError("A claimed user is already in an active match")

        match = Match(
            room_id=generate_room_id(),
            user1_id=user_id,
            user2_id=partner_id,
            status=MATCH_ACTIVE,
        )
        session.add(match)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Match insert rejected: {exc.orig}") from exc
        return match

    async def _announce(self, match: Match) -> None:
        for uid in (match.user1_id, match.user2_id):
            row: dict[str, Any] = {"user_id": str(uid), "status": TICKET_WAITING}
            await self._notifier.publish("queue", DELETE, row)
        await self._match_service.publish_created(match)
