"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work), exposes
domain-relevant queries only and hands back domain dataclasses, never ORM
rows.  ``CarpoolUnitOfWork`` bundles the repositories that take part in
the carpool transactions.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from pydantic import TypeAdapter
from pydantic_core import to_jsonable_python
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import atomic
from .models import (
    BookingModel,
    CarpoolAuditLogModel,
    CarpoolGroupModel,
    CarpoolInviteModel,
    CostVariableModel,
    ParamSetModel,
    SegmentModel,
)
from carpool.domain.clock import ensure_utc
from carpool.domain.entities import (
    AuditLogEntry,
    Booking,
    CarpoolGroup,
    CarpoolInvite,
    CombinedRoute,
    Location,
    Segment,
    SharedCostSummary,
)
from carpool.domain.enums import BookingStatus, ConsentStatus, GroupStatus
from carpool.domain.errors import NotFoundError

_route_adapter = TypeAdapter(CombinedRoute)
_cost_adapter = TypeAdapter(SharedCostSummary)

# Marker for "leave the column as it is"
_KEEP = object()


def _location(lat: Optional[float], lng: Optional[float]) -> Optional[Location]:
    if lat is None or lng is None:
        return None
    return Location(lat, lng)


def _to_segment(row: SegmentModel) -> Segment:
    return Segment(
        segment_no=row.segment_no,
        origin=row.origin,
        destination=row.destination,
        origin_location=_location(row.origin_lat, row.origin_lng),
        destination_location=_location(row.destination_lat, row.destination_lng),
        route_polyline=row.route_polyline,
        geocode_validated=bool(row.geocode_validated),
        est_km=row.est_km,
    )


def _to_booking(row: BookingModel) -> Booking:
    return Booking(
        id=row.id,
        booking_number=row.booking_number or "",
        requester_id=row.requester_id,
        start_at=ensure_utc(row.start_at),
        end_at=ensure_utc(row.end_at),
        passenger_count=row.passenger_count,
        status=BookingStatus(row.booking_status),
        carpool_group_id=row.carpool_group_id,
        segments=[_to_segment(s) for s in row.segments if s.deleted_at is None],
    )


def _to_group(row: CarpoolGroupModel, member_ids: list[int]) -> CarpoolGroup:
    return CarpoolGroup(
        id=row.id,
        host_booking_id=row.host_booking_id,
        status=GroupStatus(row.status),
        member_booking_ids=member_ids,
        combined_route=(
            _route_adapter.validate_python(row.combined_route)
            if row.combined_route
            else None
        ),
        pre_merge_distance=row.pre_merge_distance,
        post_merge_distance=row.post_merge_distance,
        detour_percentage=row.detour_percentage,
        shared_cost=(
            _cost_adapter.validate_python(row.shared_cost)
            if row.shared_cost
            else None
        ),
        cost_mode=row.cost_mode,
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _to_invite(row: CarpoolInviteModel) -> CarpoolInvite:
    return CarpoolInvite(
        id=row.id,
        carpool_group_id=row.carpool_group_id,
        host_booking_id=row.host_booking_id,
        joiner_booking_id=row.joiner_booking_id,
        consent_status=ConsentStatus(row.consent_status),
        expires_at=ensure_utc(row.expires_at),
        responded_at=ensure_utc(row.responded_at),
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=ensure_utc(row.created_at),
    )


def _to_audit_entry(row: CarpoolAuditLogModel) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        carpool_group_id=row.carpool_group_id,
        host_booking_id=row.host_booking_id,
        joiner_booking_id=row.joiner_booking_id,
        action_type=row.action_type,
        actor_id=row.actor_id,
        old_value=row.old_value,
        new_value=row.new_value,
        metadata=row.metadata_,
        timestamp=ensure_utc(row.timestamp),
    )


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _live(self):
        return (
            select(BookingModel)
            .where(BookingModel.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )

    async def get_by_id(
        self, booking_id: int, *, for_update: bool = False
    ) -> Optional[Booking]:
        """Load a booking; ``for_update`` takes a row lock (SELECT ... FOR UPDATE)."""
        query = self._live().where(BookingModel.id == booking_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        row = result.scalar_one_or_none()
        return _to_booking(row) if row else None

    async def get_many(self, booking_ids: Iterable[int]) -> list[Booking]:
        """Bookings in the order of *booking_ids*; unknown ids are skipped."""
        ids = list(booking_ids)
        if not ids:
            return []
        result = await self.session.execute(
            self._live().where(BookingModel.id.in_(ids))
        )
        by_id = {row.id: _to_booking(row) for row in result.scalars().all()}
        return [by_id[i] for i in ids if i in by_id]

    async def find_pool(
        self,
        *,
        window_start: datetime,
        window_end: datetime,
        statuses: Iterable[BookingStatus],
        exclude_booking_id: Optional[int] = None,
        exclude_requester_id: Optional[str] = None,
    ) -> list[Booking]:
        """Ungrouped bookings starting inside ``[window_start, window_end]``."""
        query = (
            self._live()
            .where(
                BookingModel.booking_status.in_(list(statuses)),
                BookingModel.start_at >= window_start,
                BookingModel.start_at <= window_end,
                BookingModel.carpool_group_id.is_(None),
            )
            .order_by(BookingModel.start_at, BookingModel.id)
        )
        if exclude_booking_id is not None:
            query = query.where(BookingModel.id != exclude_booking_id)
        if exclude_requester_id is not None:
            query = query.where(
                or_(
                    BookingModel.requester_id.is_(None),
                    BookingModel.requester_id != exclude_requester_id,
                )
            )
        result = await self.session.execute(query)
        return [_to_booking(row) for row in result.scalars().all()]

    async def get_group_members(self, group_id: int) -> list[Booking]:
        result = await self.session.execute(
            self._live()
            .where(BookingModel.carpool_group_id == group_id)
            .order_by(BookingModel.id)
        )
        return [_to_booking(row) for row in result.scalars().all()]

    async def update_booking(
        self,
        booking_id: int,
        *,
        status: BookingStatus,
        actor_id: str,
        carpool_group_id=_KEEP,
    ) -> None:
        values = {"booking_status": status, "updated_by": actor_id}
        if carpool_group_id is not _KEEP:
            values["carpool_group_id"] = carpool_group_id
        result = await self.session.execute(
            update(BookingModel)
            .where(BookingModel.id == booking_id)
            .values(**values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Booking with ID {booking_id} not found")


class CarpoolGroupRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _member_ids(self, group_id: int) -> list[int]:
        result = await self.session.execute(
            select(BookingModel.id)
            .where(
                BookingModel.carpool_group_id == group_id,
                BookingModel.deleted_at.is_(None),
            )
            .order_by(BookingModel.id)
        )
        return list(result.scalars().all())

    async def get_by_id(self, group_id: int) -> Optional[CarpoolGroup]:
        result = await self.session.execute(
            select(CarpoolGroupModel)
            .where(CarpoolGroupModel.id == group_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return _to_group(row, await self._member_ids(row.id))

    async def get_active_for_host(self, host_booking_id: int) -> Optional[CarpoolGroup]:
        result = await self.session.execute(
            select(CarpoolGroupModel)
            .where(
                CarpoolGroupModel.host_booking_id == host_booking_id,
                CarpoolGroupModel.status == GroupStatus.ACTIVE,
            )
            .order_by(CarpoolGroupModel.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return _to_group(row, await self._member_ids(row.id))

    async def create(self, host_booking_id: int, actor_id: str) -> CarpoolGroup:
        row = CarpoolGroupModel(
            host_booking_id=host_booking_id,
            status=GroupStatus.ACTIVE,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.session.add(row)
        await self.session.flush()
        await self.session.refresh(row)
        return _to_group(row, [])

    async def transition_status(
        self,
        group_id: int,
        *,
        from_statuses: Iterable[GroupStatus],
        to_status: GroupStatus,
        actor_id: str,
    ) -> bool:
        """Compare-and-set the status.  False when no row was in *from_statuses*."""
        result = await self.session.execute(
            update(CarpoolGroupModel)
            .where(
                CarpoolGroupModel.id == group_id,
                CarpoolGroupModel.status.in_(list(from_statuses)),
            )
            .values(status=to_status, updated_by=actor_id)
        )
        return result.rowcount == 1

    async def save_route(
        self,
        group_id: int,
        *,
        route: CombinedRoute,
        pre_merge_distance: float,
        actor_id: str,
    ) -> None:
        await self.session.execute(
            update(CarpoolGroupModel)
            .where(CarpoolGroupModel.id == group_id)
            .values(
                combined_route=_route_adapter.dump_python(route, mode="json"),
                pre_merge_distance=pre_merge_distance,
                post_merge_distance=route.total_distance,
                detour_percentage=route.detour_percentage,
                updated_by=actor_id,
            )
        )

    async def save_cost(
        self, group_id: int, summary: SharedCostSummary, actor_id: str
    ) -> None:
        await self.session.execute(
            update(CarpoolGroupModel)
            .where(CarpoolGroupModel.id == group_id)
            .values(
                shared_cost=_cost_adapter.dump_python(summary, mode="json"),
                cost_mode=summary.cost_mode,
                updated_by=actor_id,
            )
        )


class CarpoolInviteRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def _live(self):
        return (
            select(CarpoolInviteModel)
            .where(CarpoolInviteModel.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )

    async def create(self, invite: CarpoolInvite) -> CarpoolInvite:
        row = CarpoolInviteModel(
            carpool_group_id=invite.carpool_group_id,
            host_booking_id=invite.host_booking_id,
            joiner_booking_id=invite.joiner_booking_id,
            consent_status=invite.consent_status,
            expires_at=invite.expires_at,
            created_by=invite.created_by,
            updated_by=invite.created_by,
        )
        self.session.add(row)
        await self.session.flush()
        await self.session.refresh(row)
        return _to_invite(row)

    async def get_by_id(self, invite_id: int) -> Optional[CarpoolInvite]:
        result = await self.session.execute(
            self._live().where(CarpoolInviteModel.id == invite_id)
        )
        row = result.scalar_one_or_none()
        return _to_invite(row) if row else None

    async def list_for_group(self, group_id: int) -> list[CarpoolInvite]:
        result = await self.session.execute(
            self._live()
            .where(CarpoolInviteModel.carpool_group_id == group_id)
            .order_by(CarpoolInviteModel.id)
        )
        return [_to_invite(row) for row in result.scalars().all()]

    async def find_open_for_joiner(
        self, group_id: int, joiner_booking_id: int
    ) -> Optional[CarpoolInvite]:
        """A PENDING or APPROVED invite of this joiner in this group, if any."""
        result = await self.session.execute(
            self._live()
            .where(
                CarpoolInviteModel.carpool_group_id == group_id,
                CarpoolInviteModel.joiner_booking_id == joiner_booking_id,
                CarpoolInviteModel.consent_status.in_(
                    [ConsentStatus.PENDING, ConsentStatus.APPROVED]
                ),
            )
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _to_invite(row) if row else None

    async def update_consent(
        self,
        invite_id: int,
        *,
        status: ConsentStatus,
        actor_id: str,
        responded_at: Optional[datetime] = None,
    ) -> Optional[CarpoolInvite]:
        """Move a PENDING invite to *status*.  None when it was not PENDING."""
        values = {"consent_status": status, "updated_by": actor_id}
        if responded_at is not None:
            values["responded_at"] = responded_at
        result = await self.session.execute(
            update(CarpoolInviteModel)
            .where(
                CarpoolInviteModel.id == invite_id,
                CarpoolInviteModel.consent_status == ConsentStatus.PENDING,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            return None
        return await self.get_by_id(invite_id)


class AuditLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, entry: AuditLogEntry) -> None:
        self.session.add(
            CarpoolAuditLogModel(
                carpool_group_id=entry.carpool_group_id,
                host_booking_id=entry.host_booking_id,
                joiner_booking_id=entry.joiner_booking_id,
                action_type=entry.action_type,
                actor_id=entry.actor_id,
                old_value=to_jsonable_python(entry.old_value),
                new_value=to_jsonable_python(entry.new_value),
                metadata_=to_jsonable_python(entry.metadata),
                timestamp=entry.timestamp,
            )
        )
        await self.session.flush()

    async def list_for_group(self, group_id: int) -> list[AuditLogEntry]:
        result = await self.session.execute(
            select(CarpoolAuditLogModel)
            .where(CarpoolAuditLogModel.carpool_group_id == group_id)
            .order_by(
                CarpoolAuditLogModel.timestamp.desc(),
                CarpoolAuditLogModel.id.desc(),
            )
        )
        return [_to_audit_entry(row) for row in result.scalars().all()]


class ParamSetRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def latest_published_items(self, group: str) -> dict[str, str]:
        """Name -> raw value of *group* items in the newest Published set."""
        result = await self.session.execute(
            select(ParamSetModel)
            .where(
                ParamSetModel.status == "Published",
                ParamSetModel.deleted_at.is_(None),
            )
            .order_by(ParamSetModel.version.desc())
            .limit(1)
        )
        param_set = result.scalar_one_or_none()
        if param_set is None:
            return {}
        return {
            item.name: item.value
            for item in param_set.items
            if item.group == group and item.deleted_at is None
        }


class CostVariableRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def active_values(
        self, codes: Iterable[str], at: datetime
    ) -> dict[str, float]:
        result = await self.session.execute(
            select(CostVariableModel).where(
                CostVariableModel.code.in_(list(codes)),
                CostVariableModel.is_active.is_(True),
                CostVariableModel.deleted_at.is_(None),
                CostVariableModel.effective_from <= at,
                or_(
                    CostVariableModel.effective_to.is_(None),
                    CostVariableModel.effective_to >= at,
                ),
            )
        )
        return {row.code: row.value for row in result.scalars().all()}


class CarpoolUnitOfWork:
    """Repositories sharing one session plus its transaction boundary."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.bookings = BookingRepository(session)
        self.groups = CarpoolGroupRepository(session)
        self.invites = CarpoolInviteRepository(session)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator["CarpoolUnitOfWork"]:
        async with atomic(self.session):
            yield self
