"""
Carpool audit trail.

Writes go through a dedicated short-lived session so a failing audit insert
can never roll back (or block) the business transaction it describes.
Failures are logged and swallowed; reads return ``[]`` on failure.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.domain.clock import utc_now
from carpool.domain.entities import AuditLogEntry
from carpool.infrastructure.repositories import AuditLogRepository

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock=utc_now):
        self.session_factory = session_factory
        self.clock = clock

    async def log_action(self, entry: AuditLogEntry) -> None:
        if entry.timestamp is None:
            entry = replace(entry, timestamp=self.clock())
        try:
            async with self.session_factory() as session:
                await AuditLogRepository(session).append(entry)
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to write %s audit entry for group %s",
                entry.action_type.value,
                entry.carpool_group_id,
            )

    async def get_audit_logs(self, group_id: int) -> list[AuditLogEntry]:
        """Entries of *group_id*, newest first."""
        try:
            async with self.session_factory() as session:
                return await AuditLogRepository(session).list_for_group(group_id)
        except Exception:
            logger.exception("Failed to read audit entries for group %s", group_id)
            return []
