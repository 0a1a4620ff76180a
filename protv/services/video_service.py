"""
ProTV — Video transport provisioning (Daily.co REST API).

Each Match gets one two-party Daily room named after the match's room id.
Both participants ask for the room when they enter; whoever arrives second
gets the already-created room back instead of an error.

Room properties mirror the product rules: two participants at most, no
built-in chat (chat goes through ``chat_messages``), no screen share, no
recording, and a one-hour expiry.

Transient failures (network errors, 429, 5xx) are retried with exponential
backoff.  Anything left after the retries surfaces as
``TransportProvisioningError``; the caller keeps the match alive in a
degraded state so the user can still skip.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from protv.config import get_settings
from protv.errors import TransportProvisioningError

logger = structlog.get_logger("protv.video_service")

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class VideoRoom:
    name: str
    url: str
    expires_at: datetime | None = None


class _RetryableResponse(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, _RetryableResponse))


class VideoService:
    """Create and destroy Daily rooms.

    Parameters
    ----------
    api_key:
        Daily API key; defaults to ``DAILY_API_KEY``.
    client:
        Optional pre-built ``httpx.AsyncClient`` (tests pass one backed by
        ``httpx.MockTransport``).
    max_attempts / wait_multiplier:
        Retry policy knobs.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        *,
        max_attempts: int = 3,
        wait_multiplier: float = 0.5,
    ) -> None:
        settings = get_settings()
        self.api_key = settings.DAILY_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.DAILY_API_URL).rstrip("/")
        self.max_participants = settings.VIDEO_ROOM_MAX_PARTICIPANTS
        self.expiry_seconds = settings.VIDEO_ROOM_EXPIRY_SECONDS
        self._client = client
        self._owns_client = client is None
        self.max_attempts = max_attempts
        self.wait_multiplier = wait_multiplier

    # ── HTTP plumbing ───────────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self.api_key:
            raise TransportProvisioningError("DAILY_API_KEY is not set")

        client = self._get_client()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.wait_multiplier, max=5),
                reraise=False,
            ):
                with attempt:
                    response = await client.request(
                        method, f"{self.base_url}{path}", headers=headers, **kwargs
                    )
                    if response.status_code in _RETRYABLE_STATUS:
                        raise _RetryableResponse(response)
                    return response
        except RetryError as retry_err:
            last = retry_err.last_attempt.exception()
            logger.error(
                "daily_retry_exhausted",
                method=method,
                path=path,
                attempts=self.max_attempts,
                last_error=str(last),
            )
            raise TransportProvisioningError(
                f"Video provider unavailable: {last}"
            ) from last
        raise TransportProvisioningError("Video provider returned no response")

    # ── Public API ──────────────────────────────────────────────────

    def room_properties(self) -> dict:
        return {
            "max_participants": self.max_participants,
            "enable_chat": False,
            "enable_screenshare": False,
            "enable_recording": False,
            "exp": int(time.time()) + self.expiry_seconds,
        }

    async def create_room(self, room_name: str) -> VideoRoom:
        """Provision (or reuse) the Daily room called *room_name*."""
        log = logger.bind(room_id=room_name)
        response = await self._request(
            "POST",
            "/rooms",
            json={"name": room_name, "properties": self.room_properties()},
        )

        if response.status_code == 400 and "already exists" in response.text:
            log.info("daily_room_exists")
            return await self.get_room(room_name)

        if response.status_code >= 400:
            log.error(
                "daily_create_room_failed",
                status=response.status_code,
                body=response.text[:500],
            )
            raise TransportProvisioningError(
                f"Failed to create video room ({response.status_code})"
            )

        room = self._parse_room(response.json(), room_name)
        log.info("daily_room_created", url=room.url)
        return room

    async def get_room(self, room_name: str) -> VideoRoom:
        response = await self._request("GET", f"/rooms/{room_name}")
        if response.status_code >= 400:
            raise TransportProvisioningError(
                f"Failed to load video room ({response.status_code})"
            )
        return self._parse_room(response.json(), room_name)

    async def delete_room(self, room_name: str) -> bool:
        """Delete the room; an already missing room counts as success."""
        response = await self._request("DELETE", f"/rooms/{room_name}")
        if response.status_code == 404:
            logger.info("daily_room_already_gone", room_id=room_name)
            return False
        if response.status_code >= 400:
            raise TransportProvisioningError(
                f"Failed to delete video room ({response.status_code})"
            )
        logger.info("daily_room_deleted", room_id=room_name)
        return True

    @staticmethod
    def _parse_room(data: dict, room_name: str) -> VideoRoom:
        url = data.get("url")
        if not url:
            raise TransportProvisioningError("Video provider response has no room url")
        exp = (data.get("config") or {}).get("exp")
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None
        return VideoRoom(name=data.get("name", room_name), url=url, expires_at=expires_at)


# ── Process-wide singleton ─────────────────────────────────────────

_video_service: VideoService | None = None


def get_video_service() -> VideoService:
    global _video_service
    if _video_service is None:
        _video_service = VideoService()
    return _video_service
