"""
ProTV — Main API Router

Aggregates all sub-routers under a single prefix so that ``protv.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from protv.api import connections, profiles, queue, rooms

router = APIRouter()

router.include_router(profiles.router, prefix="/profiles", tags=["Profiles"])
router.include_router(queue.router, prefix="/queue", tags=["Queue"])
router.include_router(rooms.router, prefix="/rooms", tags=["Rooms"])
router.include_router(connections.router, prefix="/connections", tags=["Connections"])
