"""
ProTV — Queue API

HTTP endpoints for joining and leaving the waiting pool, plus a websocket
that keeps the queue screen live:

- server → client: ``queue_count``, ``queued``, ``left``, ``matched``
  (at most once per room), ``error``
- client → server: ``{"action": "enter", "filters": {...}}``,
  ``{"action": "leave"}``

Closing the websocket does not remove the ticket; the client can restore
its state with ``GET /queue/{user_id}``.  A frame that is not a JSON object
closes the socket the same way.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from protv.api.deps import get_waiting_pool
from protv.errors import ProTVError
from protv.schemas.match import MatchResponse
from protv.schemas.queue import (
    QueueCountResponse,
    QueueEnterRequest,
    QueueEnterResponse,
    QueueFilters,
    QueueLeaveRequest,
    QueueStatusResponse,
    TicketResponse,
)
from protv.services.waiting_pool_service import QueueSession, WaitingPoolService

logger = structlog.get_logger("protv.api.queue")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST /enter — Join the waiting pool and try to pair
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/enter",
    response_model=QueueEnterResponse,
    summary="Enter the queue",
)
async def enter_queue(
    payload: QueueEnterRequest,
    pool: WaitingPoolService = Depends(get_waiting_pool),
) -> QueueEnterResponse:
    """Write a fresh ticket and run one pairing attempt for the caller.

    When a partner is found the response carries the new match and no
    ticket; otherwise the caller keeps waiting and learns about a later
    pairing through the websocket.
    """
    ticket, match = await pool.enter(payload.user_id, payload.filters)
    if match is not None:
        return QueueEnterResponse(match=MatchResponse.model_validate(match))
    return QueueEnterResponse(ticket=TicketResponse.model_validate(ticket))


@router.post("/leave", summary="Leave the queue")
async def leave_queue(
    payload: QueueLeaveRequest,
    pool: WaitingPoolService = Depends(get_waiting_pool),
) -> dict:
    removed = await pool.leave(payload.user_id)
    return {"user_id": str(payload.user_id), "removed": removed}


@router.get("/count", response_model=QueueCountResponse, summary="Waiting users")
async def queue_count(
    pool: WaitingPoolService = Depends(get_waiting_pool),
) -> QueueCountResponse:
    return QueueCountResponse(count=await pool.count())


@router.get(
    "/{user_id}",
    response_model=QueueStatusResponse,
    summary="Restore queue state",
)
async def queue_status(
    user_id: uuid.UUID,
    pool: WaitingPoolService = Depends(get_waiting_pool),
) -> QueueStatusResponse:
    ticket = await pool.get_ticket(user_id)
    return QueueStatusResponse(
        in_queue=ticket is not None,
        ticket=TicketResponse.model_validate(ticket) if ticket is not None else None,
    )


# ──────────────────────────────────────────────────────────────────────────────
# WS /ws/{user_id} — Live queue screen
# ──────────────────────────────────────────────────────────────────────────────

@router.websocket("/ws/{user_id}")
async def queue_socket(
    websocket: WebSocket,
    user_id: uuid.UUID,
    pool: WaitingPoolService = Depends(get_waiting_pool),
) -> None:
    await websocket.accept()
    log = logger.bind(user_id=str(user_id))
    session = QueueSession(user_id, pool, websocket.send_json)
    await session.start()
    await websocket.send_json({"type": "state", "in_queue": session.in_queue})
    log.info("queue_socket_open")

    try:
        while True:
            command = await websocket.receive_json()
            if not isinstance(command, dict):
                raise ValueError(f"Expected a JSON object, got {type(command).__name__}")
            action = command.get("action")
            try:
                if action == "enter":
                    filters = QueueFilters.model_validate(command.get("filters") or {})
                    await session.enter(filters)
                elif action == "leave":
                    await session.leave()
                else:
                    await websocket.send_json(
                        {"type": "error", "code": "UNKNOWN_ACTION", "message": str(action)}
                    )
            except PydanticValidationError as exc:
                await websocket.send_json(
                    {"type": "error", "code": "VALIDATION_ERROR", "message": str(exc)}
                )
            except ProTVError as exc:
                log.warning("queue_socket_command_failed", action=action, code=exc.code)
                await websocket.send_json(
                    {"type": "error", "code": exc.code, "message": exc.message}
                )
    except WebSocketDisconnect:
        log.info("queue_socket_closed")
    except (ValueError, KeyError) as exc:
        log.warning("queue_socket_bad_frame", error=str(exc))
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        await session.close()
