"""
ProTV — User reports.

Reports are an append-only audit trail.  The reason is validated before any
database round trip; an empty reason never reaches the store.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from protv.errors import ValidationError
from protv.models.match import Match
from protv.models.report import Report
from protv.services.match_service import MatchService

logger = structlog.get_logger("protv.report_service")


class ReportService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        match_service: MatchService,
    ) -> None:
        self._session_factory = session_factory
        self._match_service = match_service

    @staticmethod
    def clean_reason(reason: str) -> str:
        text = (reason or "").strip()
        if not text:
            raise ValidationError("A reason is required to report a user.", code="EMPTY_REASON")
        return text

    async def file_report(self, match: Match, reporter_id: uuid.UUID, reason: str) -> Report:
        """Record a report against the counterpart of *reporter_id* in *match*."""
        text = self.clean_reason(reason)
        self._match_service.ensure_participant(match, reporter_id)
        reported_id = match.counterpart_of(reporter_id)

        async with self._session_factory() as session:
            async with session.begin():
                report = Report(
                    reporter_id=reporter_id,
                    reported_user_id=reported_id,
                    match_id=match.id,
                    reason=text,
                )
                session.add(report)

        logger.info(
            "report_filed",
            report_id=str(report.id),
            match_id=str(match.id),
            reporter_id=str(reporter_id),
            reported_user_id=str(reported_id),
        )
        return report

    async def count_for_match(self, match_id: uuid.UUID) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Report).where(Report.match_id == match_id)
            )
            return int(result.scalar_one())
