"""
ProTV — Chat messages attached to a match.

Messages are append-only and ordered by creation time.  Delivery to the
other participant is a realtime push on ``chat_messages``; there is no
acknowledgement or retry.
"""

from __future__ import annotations

import uuid
from typing import Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from protv.errors import ForbiddenError, ValidationError
from protv.models.match import ChatMessage, Match
from protv.schemas.match import ChatMessageResponse
from protv.services.connection_service import ConnectionService
from protv.services.match_service import MatchService
from protv.services.realtime_service import INSERT, RealtimeNotifier, Subscription

logger = structlog.get_logger("protv.chat_service")

MAX_MESSAGE_LENGTH = 2000


class ChatService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: RealtimeNotifier,
        match_service: MatchService,
        connection_service: ConnectionService,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._match_service = match_service
        self._connections = connection_service

    @staticmethod
    def clean_body(body: str) -> str:
        text = (body or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty.", code="EMPTY_MESSAGE")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message exceeds {MAX_MESSAGE_LENGTH} characters.",
                code="MESSAGE_TOO_LONG",
            )
        return text

    async def send(self, match: Match, sender_id: uuid.UUID, body: str) -> ChatMessage:
        text = self.clean_body(body)
        self._match_service.ensure_participant(match, sender_id)

        async with self._session_factory() as session:
            async with session.begin():
                message = ChatMessage(match_id=match.id, sender_id=sender_id, message=text)
                session.add(message)

        logger.info(
            "chat_message_sent",
            match_id=str(match.id),
            sender_id=str(sender_id),
            length=len(text),
        )
        await self._notifier.publish(
            "chat_messages",
            INSERT,
            ChatMessageResponse.model_validate(message).model_dump(mode="json"),
        )
        return message

    async def history(self, match_id: uuid.UUID) -> Sequence[ChatMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatMessage)
                .where(ChatMessage.match_id == match_id)
                .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
            )
            return result.scalars().all()

    def subscribe(self, match_id: uuid.UUID) -> Subscription:
        mid = str(match_id)
        return self._notifier.subscribe(
            "chat_messages",
            lambda row: row["match_id"] == mid,
            events={INSERT},
        )

    # ── Post-match conversations ────────────────────────────────────

    async def conversation_match(
        self,
        user_id: uuid.UUID,
        partner_id: uuid.UUID,
    ) -> Match:
        """The latest match shared with *partner_id*, once the two are connected."""
        match = await self._match_service.latest_between(user_id, partner_id)
        if await self._connections.find(user_id, partner_id) is None:
            raise ForbiddenError(
                f"User {user_id} is not connected with {partner_id}.",
                code="NOT_CONNECTED",
            )
        return match

    async def send_to_partner(
        self,
        user_id: uuid.UUID,
        partner_id: uuid.UUID,
        body: str,
    ) -> ChatMessage:
        """Message a connection; the latest match carries the thread."""
        text = self.clean_body(body)
        match = await self.conversation_match(user_id, partner_id)
        return await self.send(match, user_id, text)

    async def conversation(
        self,
        user_id: uuid.UUID,
        partner_id: uuid.UUID,
    ) -> Sequence[ChatMessage]:
        match = await self.conversation_match(user_id, partner_id)
        return await self.history(match.id)
