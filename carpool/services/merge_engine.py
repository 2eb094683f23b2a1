"""
Merge Engine -- validates and applies carpool merges and reverts.

Merge preconditions (checked in this order):

1. the group exists and may move to *Merged* (state table),
2. no invite is PENDING, DECLINED or EXPIRED and at least one is APPROVED,
3. the combined route's detour stays within the configured maximum,
4. no participant booking is already MERGED.

The writes of a merge (group claim, booking statuses and linkage, route
snapshot) and of an unmerge happen in a single transaction.  The group is
claimed with a conditional update on its status, so a concurrent second
merge finds no *Active* row and fails with ``ConflictError``.
Audit entries are written only after the transaction committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from carpool.domain.entities import (
    AuditLogEntry,
    Booking,
    CarpoolGroup,
    CombinedRoute,
)
from carpool.domain.enums import (
    AuditAction,
    BookingStatus,
    ConsentStatus,
    GroupStatus,
)
from carpool.domain.errors import (
    CarpoolError,
    ConflictError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ValidationFailedError,
)
from carpool.domain.routing import (
    RouteDistanceStrategy,
    calculate_combined_route,
    original_distance,
)
from carpool.infrastructure.repositories import CarpoolUnitOfWork
from carpool.services.audit_log import AuditLog
from carpool.services.config_provider import ConfigProvider

logger = logging.getLogger(__name__)


@dataclass
class MergeValidation:
    valid: bool
    reason: Optional[str] = None
    combined_route: Optional[CombinedRoute] = None
    host: Optional[Booking] = field(default=None, repr=False)
    joiners: list[Booking] = field(default_factory=list, repr=False)


class MergeEngine:
    def __init__(
        self,
        uow: CarpoolUnitOfWork,
        config_provider: ConfigProvider,
        audit_log: AuditLog,
        distance_strategy: Optional[RouteDistanceStrategy] = None,
    ):
        self.uow = uow
        self.config_provider = config_provider
        self.audit_log = audit_log
        self.distance_strategy = distance_strategy

    def calculate_combined_route(
        self, host: Booking, joiners: list[Booking]
    ) -> CombinedRoute:
        return calculate_combined_route(host, joiners, self.distance_strategy)

    async def validate_pre_merge(self, group_id: int) -> MergeValidation:
        group = await self.uow.groups.get_by_id(group_id)
        if group is None:
            return MergeValidation(False, "Carpool group not found")

        invites = await self.uow.invites.list_for_group(group_id)
        statuses = {invite.consent_status for invite in invites}
        if ConsentStatus.PENDING in statuses:
            return MergeValidation(False, "Some invites are still pending approval")
        if ConsentStatus.DECLINED in statuses:
            return MergeValidation(False, "Some invites have been declined")
        if ConsentStatus.EXPIRED in statuses:
            return MergeValidation(False, "Some invites have expired")

        approved = [i for i in invites if i.consent_status == ConsentStatus.APPROVED]
        if not approved:
            return MergeValidation(False, "No approved invites found")

        host = await self.uow.bookings.get_by_id(group.host_booking_id)
        if host is None:
            return MergeValidation(
                False, f"Host booking with ID {group.host_booking_id} not found"
            )
        joiners = await self.uow.bookings.get_many(
            invite.joiner_booking_id for invite in approved
        )

        route = self.calculate_combined_route(host, joiners)
        config = await self.config_provider.get_config()
        if route.detour_percentage > config.max_detour_percentage:
            return MergeValidation(
                False,
                f"Detour percentage ({route.detour_percentage:.2f}%) exceeds "
                f"maximum allowed ({config.max_detour_percentage:g}%)",
                combined_route=route,
            )

        return MergeValidation(
            True, combined_route=route, host=host, joiners=joiners
        )

    async def merge(self, group_id: int, actor_id: str) -> CarpoolGroup:
        group = await self._get_group(group_id)
        group.transition_to(GroupStatus.MERGED)

        validation = await self.validate_pre_merge(group_id)
        if not validation.valid:
            raise ValidationFailedError(validation.reason)

        host, joiners = validation.host, validation.joiners
        for booking in (host, *joiners):
            if booking.status == BookingStatus.MERGED:
                raise InvalidStateError(
                    f"Booking {booking.booking_number or booking.id} is already merged"
                )

        route = validation.combined_route
        pre_merge_distance = original_distance([host, *joiners])

        try:
            async with self.uow.atomic() as uow:
                claimed = await uow.groups.transition_status(
                    group_id,
                    from_statuses=[GroupStatus.ACTIVE],
                    to_status=GroupStatus.MERGED,
                    actor_id=actor_id,
                )
                if not claimed:
                    raise ConflictError("Carpool group was modified concurrently")

                await uow.bookings.update_booking(
                    host.id, status=BookingStatus.MERGED, actor_id=actor_id
                )
                for joiner in joiners:
                    await uow.bookings.update_booking(
                        joiner.id,
                        status=BookingStatus.MERGED,
                        actor_id=actor_id,
                        carpool_group_id=group_id,
                    )
                await uow.groups.save_route(
                    group_id,
                    route=route,
                    pre_merge_distance=pre_merge_distance,
                    actor_id=actor_id,
                )
        except CarpoolError:
            raise
        except Exception as exc:
            logger.exception("Merge of carpool group %s failed", group_id)
            raise InternalError("Failed to merge carpool group") from exc

        logger.info(
            "Merged carpool group %s: host=%s joiners=%s detour=%.2f%%",
            group_id, host.id, [j.id for j in joiners], route.detour_percentage,
        )
        await self.audit_log.log_action(
            AuditLogEntry(
                action_type=AuditAction.MERGE,
                actor_id=actor_id,
                carpool_group_id=group_id,
                host_booking_id=host.id,
                new_value={
                    "combined_route": route,
                    "merged_bookings": [j.id for j in joiners],
                    "pre_merge_distance": pre_merge_distance,
                    "post_merge_distance": route.total_distance,
                    "detour_percentage": route.detour_percentage,
                },
            )
        )
        return await self._get_group(group_id)

    async def unmerge(self, group_id: int, actor_id: str) -> CarpoolGroup:
        group = await self._get_group(group_id)
        old_status = group.status
        group.transition_to(GroupStatus.UNMERGED)

        members = await self.uow.bookings.get_group_members(group_id)
        affected = [group.host_booking_id] + [
            m.id for m in members if m.id != group.host_booking_id
        ]

        try:
            async with self.uow.atomic() as uow:
                claimed = await uow.groups.transition_status(
                    group_id,
                    from_statuses=[GroupStatus.ACTIVE, GroupStatus.MERGED],
                    to_status=GroupStatus.UNMERGED,
                    actor_id=actor_id,
                )
                if not claimed:
                    raise ConflictError("Carpool group was modified concurrently")

                for booking_id in affected:
                    await uow.bookings.update_booking(
                        booking_id,
                        status=BookingStatus.SUBMITTED,
                        actor_id=actor_id,
                        carpool_group_id=None,
                    )
        except CarpoolError:
            raise
        except Exception as exc:
            logger.exception("Unmerge of carpool group %s failed", group_id)
            raise InternalError("Failed to unmerge carpool group") from exc

        logger.info("Unmerged carpool group %s: bookings=%s", group_id, affected)
        await self.audit_log.log_action(
            AuditLogEntry(
                action_type=AuditAction.UNMERGE,
                actor_id=actor_id,
                carpool_group_id=group_id,
                host_booking_id=group.host_booking_id,
                old_value={"status": old_status.value},
                new_value={
                    "status": GroupStatus.UNMERGED.value,
                    "affected_bookings": affected,
                },
            )
        )
        return await self._get_group(group_id)

    async def _get_group(self, group_id: int) -> CarpoolGroup:
        group = await self.uow.groups.get_by_id(group_id)
        if group is None:
            raise NotFoundError("Carpool group not found")
        return group
