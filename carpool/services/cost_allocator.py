"""
Cost Allocator -- prices a carpool trip and splits it among participants.

Distance / duration basis, first available wins:

1. the group's post-merge distance with the combined route's duration,
2. the combined route's own distance and duration,
3. the sum of every participant's distance-only cost (no driver time).

A missing or zero duration counts as one hour.  The split itself is the
strategy selected by ``CostMode`` (see ``carpool.domain.pricing``).
"""

from __future__ import annotations

import logging
from typing import Sequence

from carpool.domain.entities import (
    AuditLogEntry,
    Booking,
    CarpoolGroup,
    SharedCostSummary,
)
from carpool.domain.enums import AuditAction, CostMode
from carpool.domain.errors import (
    CarpoolError,
    InternalError,
    NotFoundError,
    ValidationFailedError,
)
from carpool.domain.pricing import TripCostModel, allocate_shared_cost
from carpool.infrastructure.repositories import CarpoolUnitOfWork
from carpool.services.audit_log import AuditLog
from carpool.services.config_provider import ConfigProvider

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60.0


def total_trip_cost(
    group: CarpoolGroup, participants: Sequence[Booking], model: TripCostModel
) -> float:
    route = group.combined_route
    duration = (
        route.total_duration
        if route is not None and route.total_duration > 0
        else DEFAULT_DURATION_MINUTES
    )

    if group.post_merge_distance and group.post_merge_distance > 0:
        return model.trip_cost(group.post_merge_distance, duration)
    if route is not None and route.total_distance > 0:
        return model.trip_cost(route.total_distance, duration)
    return sum(model.distance_cost(b.distance_km or 0.0) for b in participants)


class CostAllocator:
    def __init__(
        self,
        uow: CarpoolUnitOfWork,
        config_provider: ConfigProvider,
        audit_log: AuditLog,
    ):
        self.uow = uow
        self.config_provider = config_provider
        self.audit_log = audit_log

    async def allocate_cost(
        self, group_id: int, cost_mode: CostMode, actor_id: str
    ) -> SharedCostSummary:
        try:
            cost_mode = CostMode(cost_mode)
        except ValueError:
            raise ValidationFailedError(f"Unknown cost mode: {cost_mode}") from None

        group = await self.uow.groups.get_by_id(group_id)
        if group is None:
            raise NotFoundError("Carpool group not found")
        host = await self.uow.bookings.get_by_id(group.host_booking_id)
        if host is None:
            raise NotFoundError(
                f"Host booking with ID {group.host_booking_id} not found"
            )
        members = await self.uow.bookings.get_group_members(group_id)
        participants = [host] + [m for m in members if m.id != host.id]

        model = TripCostModel(await self.config_provider.get_cost_rates())
        total = total_trip_cost(group, participants, model)
        summary = allocate_shared_cost(participants, total, cost_mode)

        try:
            async with self.uow.atomic() as uow:
                await uow.groups.save_cost(group_id, summary, actor_id)
        except CarpoolError:
            raise
        except Exception as exc:
            logger.exception("Saving shared cost of group %s failed", group_id)
            raise InternalError("Failed to save shared cost") from exc

        await self.audit_log.log_action(
            AuditLogEntry(
                action_type=AuditAction.COST_RECALCULATED,
                actor_id=actor_id,
                carpool_group_id=group_id,
                host_booking_id=host.id,
                old_value=group.shared_cost,
                new_value=summary,
                metadata={"cost_mode": cost_mode.value},
            )
        )
        return summary
