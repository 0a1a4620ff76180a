"""
ProTV — Service dependencies for the API layer.

Every service is a lazily built process-wide singleton wired to the shared
``async_session_factory`` and realtime notifier.  Routes receive them through
``Depends`` so tests can swap any of them via ``app.dependency_overrides``.
"""

from __future__ import annotations

from protv.database import async_session_factory
from protv.services.chat_service import ChatService
from protv.services.connection_service import ConnectionService
from protv.services.match_service import MatchService
from protv.services.pairing_service import PairingService
from protv.services.realtime_service import RealtimeNotifier, get_notifier
from protv.services.report_service import ReportService
from protv.services.video_service import VideoService, get_video_service
from protv.services.waiting_pool_service import WaitingPoolService

# ── Service singletons ────────────────────────────────────────────────────────

_match_service: MatchService | None = None
_pairing_service: PairingService | None = None
_waiting_pool: WaitingPoolService | None = None
_chat_service: ChatService | None = None
_connection_service: ConnectionService | None = None
_report_service: ReportService | None = None


def get_realtime_notifier() -> RealtimeNotifier:
    return get_notifier()


def get_video() -> VideoService:
    return get_video_service()


def get_match_service() -> MatchService:
    global _match_service
    if _match_service is None:
        _match_service = MatchService(async_session_factory, get_notifier())
    return _match_service


def get_pairing_service() -> PairingService:
    global _pairing_service
    if _pairing_service is None:
        _pairing_service = PairingService(
            async_session_factory, get_notifier(), get_match_service()
        )
    return _pairing_service


def get_waiting_pool() -> WaitingPoolService:
    global _waiting_pool
    if _waiting_pool is None:
        _waiting_pool = WaitingPoolService(
            async_session_factory,
            get_notifier(),
            get_match_service(),
            get_pairing_service(),
        )
    return _waiting_pool


def get_chat_service() -> ChatService:
    global _chat_service
    if _chat_service is None:
        _chat_service = ChatService(
            async_session_factory,
            get_notifier(),
            get_match_service(),
            get_connection_service(),
        )
    return _chat_service


def get_connection_service() -> ConnectionService:
    global _connection_service
    if _connection_service is None:
        _connection_service = ConnectionService(async_session_factory, get_match_service())
    return _connection_service


def get_report_service() -> ReportService:
    global _report_service
    if _report_service is None:
        _report_service = ReportService(async_session_factory, get_match_service())
    return _report_service
