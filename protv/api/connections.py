"""
ProTV — Connections API

Accepted connections and the post-match conversation with each of them.
Messages between two people attach to the most recent match they shared,
and only connected pairs can read or write them.

The conversation websocket pushes new messages live:

- server → client: ``ready``, ``chat_message``, ``error``
- client → server: ``{"action": "send", "message": ...}``
"""

from __future__ import annotations

import asyncio
import uuid

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from protv.api.deps import get_chat_service, get_connection_service
from protv.errors import ProTVError
from protv.models.match import ChatMessage
from protv.schemas.match import (
    ChatMessageResponse,
    ConnectionListItem,
    ConversationMessageCreate,
)
from protv.schemas.profile import ProfileResponse
from protv.services.chat_service import ChatService
from protv.services.connection_service import ConnectionService
from protv.services.realtime_service import ChangeEvent, watch

logger = structlog.get_logger("protv.api.connections")

router = APIRouter()


@router.get(
    "/{user_id}",
    response_model=list[ConnectionListItem],
    summary="List a user's connections",
)
async def list_connections(
    user_id: uuid.UUID,
    connections: ConnectionService = Depends(get_connection_service),
) -> list[ConnectionListItem]:
    rows = await connections.list_for_user(user_id)
    return [
        ConnectionListItem(
            connection_id=connection.id,
            partner=ProfileResponse.model_validate(partner),
            status=connection.status,
            created_at=connection.created_at,
        )
        for connection, partner in rows
    ]


@router.get(
    "/{user_id}/{partner_id}/messages",
    response_model=list[ChatMessageResponse],
    summary="Conversation with a past match",
)
async def get_conversation(
    user_id: uuid.UUID,
    partner_id: uuid.UUID,
    chat: ChatService = Depends(get_chat_service),
) -> list[ChatMessage]:
    return list(await chat.conversation(user_id, partner_id))


@router.post(
    "/{user_id}/{partner_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Message a past match",
)
async def send_conversation_message(
    user_id: uuid.UUID,
    partner_id: uuid.UUID,
    payload: ConversationMessageCreate,
    chat: ChatService = Depends(get_chat_service),
) -> ChatMessage:
    message = await chat.send_to_partner(user_id, partner_id, payload.message)
    logger.info("conversation_message_sent", user_id=str(user_id), partner_id=str(partner_id))
    return message


# ──────────────────────────────────────────────────────────────────────────────
# WS /ws/{user_id}/{partner_id} — Live conversation
# ──────────────────────────────────────────────────────────────────────────────

@router.websocket("/ws/{user_id}/{partner_id}")
async def conversation_socket(
    websocket: WebSocket,
    user_id: uuid.UUID,
    partner_id: uuid.UUID,
    chat: ChatService = Depends(get_chat_service),
) -> None:
    await websocket.accept()
    log = logger.bind(user_id=str(user_id), partner_id=str(partner_id))

    try:
        match = await chat.conversation_match(user_id, partner_id)
    except ProTVError as exc:
        await websocket.send_json({"type": "error", "code": exc.code, "message": exc.message})
        await websocket.close()
        return

    subscription = chat.subscribe(match.id)

    async def _forward(change: ChangeEvent) -> None:
        await websocket.send_json({"type": "chat_message", "message": change.row})

    pump = watch(subscription, _forward, key=lambda change: change.row["id"])
    await websocket.send_json({"type": "ready", "match_id": str(match.id)})
    log.info("conversation_socket_open", match_id=str(match.id))

    try:
        while True:
            command = await websocket.receive_json()
            if not isinstance(command, dict):
                raise ValueError(f"Expected a JSON object, got {type(command).__name__}")
            action = command.get("action")
            try:
                if action == "send":
                    body = command.get("message")
                    await chat.send_to_partner(
                        user_id, partner_id, body if isinstance(body, str) else ""
                    )
                else:
                    await websocket.send_json(
                        {"type": "error", "code": "UNKNOWN_ACTION", "message": str(action)}
                    )
            except ProTVError as exc:
                log.warning("conversation_socket_command_failed", action=action, code=exc.code)
                await websocket.send_json(
                    {"type": "error", "code": exc.code, "message": exc.message}
                )
    except WebSocketDisconnect:
        log.info("conversation_socket_closed")
    except (ValueError, KeyError) as exc:
        log.warning("conversation_socket_bad_frame", error=str(exc))
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        subscription.close()
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
