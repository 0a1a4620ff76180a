"""
ProTV — Room session controller.

Server-side runtime for one participant's visit to an active room:

    INITIALIZING ──(transport requested)──> IN_CALL ──(skip | report | partner left)──> ENDING

The controller owns the per-second countdown, the video transport request,
the chat and match-end subscriptions, and the skip / report / connect
actions.  Everything it wants the client to know goes out through *emit*
as a small ``{"type": ...}`` dict; the websocket endpoint forwards those
verbatim.

The countdown is informational.  Reaching zero emits ``time_up`` and keeps
the call open; only an explicit skip, report or leave ends the match.
"""

from __future__ import annotations

import asyncio
import enum
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from protv.config import get_settings
from protv.errors import NotFoundError, TransportProvisioningError
from protv.models.match import Match
from protv.models.report import Report
from protv.schemas.match import ChatMessageResponse, ConnectionResponse
from protv.schemas.profile import ProfileResponse
from protv.services.chat_service import ChatService
from protv.services.connection_service import ConnectionService
from protv.services.match_service import MatchService, match_row
from protv.services.realtime_service import ChangeEvent, Subscription, watch
from protv.services.report_service import ReportService
from protv.services.video_service import VideoRoom, VideoService

logger = structlog.get_logger("protv.room_session")

Emit = Callable[[dict], Awaitable[None]]


class RoomState(str, enum.Enum):
    INITIALIZING = "initializing"
    IN_CALL = "in_call"
    ENDING = "ending"


class Countdown:
    """Whole-second countdown with a bounded number of extensions."""

    def __init__(
        self,
        seconds: int | None = None,
        extension_seconds: int | None = None,
        max_extensions: int | None = None,
    ) -> None:
        settings = get_settings()
        self.remaining = settings.ROOM_COUNTDOWN_SECONDS if seconds is None else seconds
        self.extension_seconds = (
            settings.ROOM_EXTENSION_SECONDS if extension_seconds is None else extension_seconds
        )
        self.max_extensions = (
            settings.ROOM_MAX_EXTENSIONS if max_extensions is None else max_extensions
        )
        self.extensions_used = 0

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    @property
    def can_extend(self) -> bool:
        return self.extensions_used < self.max_extensions

    def tick(self) -> int:
        if self.remaining > 0:
            self.remaining -= 1
        return self.remaining

    def extend(self) -> bool:
        """Add one extension; ``False`` (and no change) once used up."""
        if not self.can_extend:
            return False
        self.extensions_used += 1
        self.remaining += self.extension_seconds
        return True


@dataclass
class RoomExit:
    """Where the client goes after the room, and why."""

    destination: str = "queue"
    match: Optional[Match] = None
    report: Optional[Report] = None
    notice: Optional[str] = None


class RoomSessionController:
    def __init__(
        self,
        room_id: str,
        user_id: uuid.UUID,
        *,
        match_service: MatchService,
        chat_service: ChatService,
        connection_service: ConnectionService,
        report_service: ReportService,
        video_service: VideoService,
        emit: Emit,
        countdown: Countdown | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.room_id = room_id
        self.user_id = user_id
        self._matches = match_service
        self._chat = chat_service
        self._connections = connection_service
        self._reports = report_service
        self._video = video_service
        self._emit = emit
        self._sleep = sleep
        self.countdown = countdown or Countdown()

        self.state = RoomState.INITIALIZING
        self.match: Optional[Match] = None
        self.video_room: Optional[VideoRoom] = None
        self.degraded = False
        self.connection_status: Optional[str] = None
        self.exit: Optional[RoomExit] = None
        # Set once the session is over and its last frame has gone out.
        self.ended = asyncio.Event()

        self.transport_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._chat_sub: Optional[Subscription] = None
        self._chat_task: Optional[asyncio.Task] = None
        self._end_sub: Optional[Subscription] = None
        self._end_task: Optional[asyncio.Task] = None
        self._closed = False
        self._log = logger.bind(room_id=room_id, user_id=str(user_id))

    # ── Entry ───────────────────────────────────────────────────────

    async def start(self) -> bool:
        """Enter the room.  ``False`` means the client was sent back to the queue."""
        try:
            match = await self._matches.get_active_by_room(self.room_id)
        except NotFoundError as exc:
            self._log.info("room_match_not_found")
            self.state = RoomState.ENDING
            self.exit = RoomExit(notice=exc.code)
            await self._emit({"type": "exit", "destination": "queue", "notice": exc.code})
            self.ended.set()
            return False

        self._matches.ensure_participant(match, self.user_id)
        self.match = match
        partner_id = match.counterpart_of(self.user_id)

        counterpart = await self._matches.counterpart_profile(match, self.user_id)
        self.connection_status = await self._connections.status(self.user_id, partner_id)

        self._chat_sub = self._chat.subscribe(match.id)
        self._chat_task = watch(
            self._chat_sub, self._on_chat, key=lambda change: change.row["id"]
        )
        self._end_sub = self._matches.subscribe_to_end(match.id)
        self._end_task = watch(self._end_sub, self._on_match_ended)

        await self._emit(
            {
                "type": "room_ready",
                "room_id": self.room_id,
                "match": match_row(match),
                "counterpart": (
                    ProfileResponse.model_validate(counterpart).model_dump(mode="json")
                    if counterpart is not None
                    else None
                ),
                "connection_status": self.connection_status,
                "remaining": self.countdown.remaining,
            }
        )

        # Transport first; the timer only starts once allocation is requested.
        self.transport_task = asyncio.create_task(self._provision_transport())
        self._timer_task = asyncio.create_task(self._run_timer())
        self._log.info("room_session_started", match_id=str(match.id))
        return True

    async def _provision_transport(self) -> None:
        try:
            room = await self._video.create_room(self.room_id)
        except TransportProvisioningError as exc:
            self.degraded = True
            self._log.warning("room_transport_failed", error=exc.message)
            await self._emit({"type": "transport_error", "message": exc.message})
            return
        self.video_room = room
        if self.state is RoomState.INITIALIZING:
            self.state = RoomState.IN_CALL
        await self._emit({"type": "transport_ready", "url": room.url})

    # ── Timer ───────────────────────────────────────────────────────

    async def _run_timer(self) -> None:
        while self.state is not RoomState.ENDING:
            await self._sleep(1)
            if self.countdown.expired:
                continue
            await self.tick()

    async def tick(self) -> int:
        remaining = self.countdown.tick()
        await self._emit({"type": "tick", "remaining": remaining})
        if remaining == 0:
            self._log.info("room_time_up", can_extend=self.countdown.can_extend)
            await self._emit({"type": "time_up", "can_extend": self.countdown.can_extend})
        return remaining

    async def extend(self) -> bool:
        if self.state is RoomState.ENDING or not self.countdown.extend():
            return False
        self._log.info("room_extended", remaining=self.countdown.remaining)
        await self._emit({"type": "extended", "remaining": self.countdown.remaining})
        return True

    # ── In-room actions ─────────────────────────────────────────────

    def _require_match(self) -> Match:
        if self.match is None:
            raise NotFoundError(
                f"No active match for room {self.room_id}.", code="MATCH_NOT_FOUND"
            )
        return self.match

    async def send_chat(self, body: str):
        return await self._chat.send(self._require_match(), self.user_id, body)

    async def connect(self):
        connection, created = await self._connections.connect(
            self._require_match(), self.user_id
        )
        self.connection_status = connection.status
        await self._emit(
            {
                "type": "connected",
                "created": created,
                "connection": ConnectionResponse.model_validate(connection).model_dump(
                    mode="json"
                ),
            }
        )
        return connection

    async def skip(self) -> RoomExit:
        """End the match, tear down, and send the client back to the queue."""
        return await self._end(reason="skip")

    async def report(self, reason: str) -> RoomExit:
        """File a report against the counterpart, then leave like ``skip``."""
        text = self._reports.clean_reason(reason)
        report = await self._reports.file_report(self._require_match(), self.user_id, text)
        room_exit = await self._end(reason="report")
        room_exit.report = report
        return room_exit

    async def leave(self) -> None:
        """Client went away without saying goodbye; end quietly."""
        if self.state is RoomState.ENDING:
            await self.close()
            return
        await self._end(reason="leave", notify=False)

    async def _end(self, *, reason: str, notify: bool = True) -> RoomExit:
        if self.exit is not None:
            return self.exit
        match = self._require_match()
        self.state = RoomState.ENDING
        ended = await self._matches.end_match(match.id)
        self.match = ended
        self.exit = RoomExit(match=ended)
        self._log.info("room_session_ended", reason=reason, match_id=str(match.id))
        await self.close()
        if notify:
            await self._emit({"type": "exit", "destination": self.exit.destination})
        self.ended.set()
        return self.exit

    # ── Pushes ──────────────────────────────────────────────────────

    async def _on_chat(self, change: ChangeEvent) -> None:
        message = ChatMessageResponse.model_validate(change.row)
        await self._emit({"type": "chat_message", "message": message.model_dump(mode="json")})

    async def _on_match_ended(self, change: ChangeEvent) -> None:
        if self.state is RoomState.ENDING:
            return
        self.state = RoomState.ENDING
        self.exit = RoomExit(notice="match_ended")
        self._log.info("room_partner_left")
        await self._emit({"type": "match_ended"})
        await self.close()
        await self._emit({"type": "exit", "destination": "queue", "notice": "match_ended"})
        self.ended.set()

    # ── Teardown ────────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop timers and subscriptions and release the video room."""
        if self._closed:
            return
        self._closed = True
        self.state = RoomState.ENDING

        for sub in (self._chat_sub, self._end_sub):
            if sub is not None:
                sub.close()

        current = asyncio.current_task()
        tasks = [
            t
            for t in (self.transport_task, self._timer_task, self._chat_task, self._end_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.match is not None:
            try:
                await self._video.delete_room(self.room_id)
            except TransportProvisioningError as exc:
                self._log.warning("room_transport_teardown_failed", error=exc.message)
