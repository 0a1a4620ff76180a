"""
ProTV — Rooms API

Room entry, in-room actions, and the room websocket.

The websocket runs one ``RoomSessionController`` per connected participant:

- server → client: ``room_ready``, ``transport_ready`` / ``transport_error``,
  ``tick``, ``time_up``, ``extended``, ``chat_message``, ``connected``,
  ``match_ended``, ``exit``, ``error``
- client → server: ``{"action": "extend" | "skip" | "connect"}``,
  ``{"action": "chat", "message": ...}``, ``{"action": "report", "reason": ...}``

Dropping the websocket, or sending a frame that is not a JSON object, ends
the match the same way a skip does.  The server closes the socket itself
once the session is over.
"""

from __future__ import annotations

import asyncio
import uuid

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from protv.api.deps import (
    get_chat_service,
    get_connection_service,
    get_match_service,
    get_report_service,
    get_video,
)
from protv.errors import ProTVError, TransportProvisioningError
from protv.models.connection import Connection
from protv.models.match import ChatMessage
from protv.schemas.match import (
    ChatMessageCreate,
    ChatMessageResponse,
    ConnectionResponse,
    MatchResponse,
    ReportCreate,
    RoomActionRequest,
    RoomDetails,
    RoomExitResponse,
)
from protv.schemas.profile import ProfileResponse
from protv.services.chat_service import ChatService
from protv.services.connection_service import ConnectionService
from protv.services.match_service import MatchService
from protv.services.report_service import ReportService
from protv.services.room_session import RoomSessionController
from protv.services.video_service import VideoService

logger = structlog.get_logger("protv.api.rooms")

router = APIRouter()


async def _release_transport(video: VideoService, room_id: str) -> None:
    try:
        await video.delete_room(room_id)
    except TransportProvisioningError as exc:
        logger.warning("room_transport_teardown_failed", room_id=room_id, error=exc.message)


# ──────────────────────────────────────────────────────────────────────────────
# GET /{room_id} — Room entry
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/{room_id}", response_model=RoomDetails, summary="Enter a room")
async def get_room(
    room_id: str,
    user_id: uuid.UUID = Query(..., description="Participant entering the room"),
    matches: MatchService = Depends(get_match_service),
    connections: ConnectionService = Depends(get_connection_service),
) -> RoomDetails:
    """Return the active match, the counterpart's profile and whether the two
    are already connected.  A missing or ended match is a 404 so the client
    can send the user back to the queue.
    """
    match = await matches.get_active_by_room(room_id)
    matches.ensure_participant(match, user_id)
    counterpart = await matches.counterpart_profile(match, user_id)
    return RoomDetails(
        match=MatchResponse.model_validate(match),
        counterpart=(
            ProfileResponse.model_validate(counterpart) if counterpart is not None else None
        ),
        connection_status=await connections.status(user_id, match.counterpart_of(user_id)),
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /{room_id}/skip and /report — Leave the room
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/{room_id}/skip", response_model=RoomExitResponse, summary="Skip to the next person")
async def skip_room(
    room_id: str,
    payload: RoomActionRequest,
    matches: MatchService = Depends(get_match_service),
    video: VideoService = Depends(get_video),
) -> RoomExitResponse:
    match = await matches.get_for_participant(room_id, payload.user_id)
    ended = await matches.end_match(match.id)
    await _release_transport(video, room_id)
    return RoomExitResponse(match=MatchResponse.model_validate(ended))


@router.post(
    "/{room_id}/report",
    response_model=RoomExitResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report the other participant and leave",
)
async def report_room(
    room_id: str,
    payload: ReportCreate,
    matches: MatchService = Depends(get_match_service),
    reports: ReportService = Depends(get_report_service),
    video: VideoService = Depends(get_video),
) -> RoomExitResponse:
    """Write one report against the counterpart, then end the match exactly
    like a skip.  An empty reason is rejected before anything is read or
    written.
    """
    reason = reports.clean_reason(payload.reason)
    match = await matches.get_for_participant(room_id, payload.user_id)
    report = await reports.file_report(match, payload.user_id, reason)
    ended = await matches.end_match(match.id)
    await _release_transport(video, room_id)
    return RoomExitResponse(match=MatchResponse.model_validate(ended), report_id=report.id)


# ──────────────────────────────────────────────────────────────────────────────
# POST /{room_id}/connect — Connect with the other participant
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/{room_id}/connect", response_model=ConnectionResponse, summary="Connect")
async def connect_room(
    room_id: str,
    payload: RoomActionRequest,
    matches: MatchService = Depends(get_match_service),
    connections: ConnectionService = Depends(get_connection_service),
) -> Connection:
    match = await matches.get_for_participant(room_id, payload.user_id)
    connection, _ = await connections.connect(match, payload.user_id)
    return connection


# ──────────────────────────────────────────────────────────────────────────────
# /{room_id}/messages — In-room chat
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{room_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a chat message",
)
async def send_room_message(
    room_id: str,
    payload: ChatMessageCreate,
    matches: MatchService = Depends(get_match_service),
    chat: ChatService = Depends(get_chat_service),
) -> ChatMessage:
    match = await matches.get_for_participant(room_id, payload.user_id)
    return await chat.send(match, payload.user_id, payload.message)


@router.get(
    "/{room_id}/messages",
    response_model=list[ChatMessageResponse],
    summary="Chat history of a room",
)
async def list_room_messages(
    room_id: str,
    user_id: uuid.UUID = Query(...),
    matches: MatchService = Depends(get_match_service),
    chat: ChatService = Depends(get_chat_service),
) -> list[ChatMessage]:
    match = await matches.get_for_participant(room_id, user_id)
    return list(await chat.history(match.id))


# ──────────────────────────────────────────────────────────────────────────────
# WS /ws/{room_id}/{user_id} — Live room session
# ──────────────────────────────────────────────────────────────────────────────

def _text_field(command: dict, key: str) -> str:
    value = command.get(key)
    return value if isinstance(value, str) else ""


async def _next_command(
    websocket: WebSocket,
    controller: RoomSessionController,
) -> dict | None:
    """Next client command, or ``None`` once the session ended on its own
    (partner left, skip, report)."""
    receive = asyncio.ensure_future(websocket.receive_json())
    ended = asyncio.ensure_future(controller.ended.wait())
    try:
        done, _ = await asyncio.wait(
            {receive, ended}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (receive, ended):
            if not task.done():
                task.cancel()

    if ended in done:
        return None
    command = receive.result()
    if not isinstance(command, dict):
        raise ValueError(f"Expected a JSON object, got {type(command).__name__}")
    return command


@router.websocket("/ws/{room_id}/{user_id}")
async def room_socket(
    websocket: WebSocket,
    room_id: str,
    user_id: uuid.UUID,
    matches: MatchService = Depends(get_match_service),
    chat: ChatService = Depends(get_chat_service),
    connections: ConnectionService = Depends(get_connection_service),
    reports: ReportService = Depends(get_report_service),
    video: VideoService = Depends(get_video),
) -> None:
    await websocket.accept()
    log = logger.bind(room_id=room_id, user_id=str(user_id))
    controller = RoomSessionController(
        room_id,
        user_id,
        match_service=matches,
        chat_service=chat,
        connection_service=connections,
        report_service=reports,
        video_service=video,
        emit=websocket.send_json,
    )

    try:
        try:
            entered = await controller.start()
        except ProTVError as exc:
            await websocket.send_json({"type": "error", "code": exc.code, "message": exc.message})
            await websocket.close()
            return
        if not entered:
            await websocket.close()
            return

        while True:
            command = await _next_command(websocket, controller)
            if command is None:
                break
            action = command.get("action")
            try:
                if action == "extend":
                    if not await controller.extend():
                        await websocket.send_json(
                            {"type": "error", "code": "ALREADY_EXTENDED", "message": "Already extended."}
                        )
                elif action == "chat":
                    await controller.send_chat(_text_field(command, "message"))
                elif action == "connect":
                    await controller.connect()
                elif action == "skip":
                    await controller.skip()
                elif action == "report":
                    await controller.report(_text_field(command, "reason"))
                else:
                    await websocket.send_json(
                        {"type": "error", "code": "UNKNOWN_ACTION", "message": str(action)}
                    )
            except ProTVError as exc:
                log.warning("room_socket_command_failed", action=action, code=exc.code)
                await websocket.send_json(
                    {"type": "error", "code": exc.code, "message": exc.message}
                )
        await websocket.close()
    except WebSocketDisconnect:
        log.info("room_socket_disconnected")
        await controller.leave()
    except (ValueError, KeyError) as exc:
        # Unreadable frame: treated like the client going away.
        log.warning("room_socket_bad_frame", error=str(exc))
        await controller.leave()
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        await controller.close()
