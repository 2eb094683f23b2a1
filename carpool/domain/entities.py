"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``CarpoolGroup``: enforces valid lifecycle
  transitions (Active -> Merged -> Unmerged, Active -> Unmerged).
- ``CarpoolInvite.is_expired`` / ``is_terminal`` encapsulate the
  double-consent bookkeeping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .enums import (
    AuditAction,
    BookingStatus,
    ConsentStatus,
    CostMode,
    GROUP_TRANSITIONS,
    GroupStatus,
    TERMINAL_CONSENT_STATUSES,
    WaypointType,
)
from .errors import InvalidStateError


class InvalidStateTransition(InvalidStateError):
    """Raised when a group status change violates the state machine."""


# ── Value Object ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    @classmethod
    def parse(cls, lat_long: str) -> "Location":
        """Parse a ``"lat,lng"`` string as sent by booking forms."""
        parts = [p.strip() for p in lat_long.split(",")]
        if len(parts) != 2:
            raise ValueError(f"Invalid coordinate format: {lat_long!r}")
        return cls(float(parts[0]), float(parts[1]))

    def __str__(self) -> str:
        return f"{self.latitude},{self.longitude}"


# ── Bookings (owned by the booking store, read here) ──────────────────


@dataclass
class Segment:
    origin: str
    destination: str
    segment_no: int = 1
    origin_location: Optional[Location] = None
    destination_location: Optional[Location] = None
    route_polyline: Optional[str] = None
    geocode_validated: bool = False
    est_km: Optional[float] = None

    @property
    def has_validated_path(self) -> bool:
        return bool(self.route_polyline) and self.geocode_validated


@dataclass
class Booking:
    id: int
    start_at: datetime
    end_at: datetime
    passenger_count: int = 1
    status: BookingStatus = BookingStatus.SUBMITTED
    booking_number: str = ""
    requester_id: Optional[str] = None
    carpool_group_id: Optional[int] = None
    segments: list[Segment] = field(default_factory=list)

    @property
    def primary_segment(self) -> Optional[Segment]:
        return self.segments[0] if self.segments else None

    @property
    def distance_km(self) -> Optional[float]:
        segment = self.primary_segment
        return segment.est_km if segment else None


@dataclass
class DraftTrip:
    """Trip data typed into a booking form before the booking exists."""

    start_at: datetime
    end_at: datetime
    passenger_count: int
    segment: Segment


# ── Carpool aggregate ─────────────────────────────────────────────────


@dataclass
class Waypoint:
    booking_id: int
    type: WaypointType
    location: str
    passenger_count: int
    sequence: int
    estimated_time: datetime
    booking_number: str = ""
    coordinates: Optional[Location] = None


@dataclass
class CombinedRoute:
    waypoints: list[Waypoint] = field(default_factory=list)
    total_distance: float = 0.0  # km
    total_duration: float = 0.0  # minutes
    detour_percentage: float = 0.0


@dataclass
class CostShare:
    booking_id: int
    distance: float
    cost_share: float
    percentage: float
    booking_number: str = ""
    requester_id: Optional[str] = None


@dataclass
class SharedCostSummary:
    total_cost: float
    cost_mode: CostMode
    breakdown: list[CostShare] = field(default_factory=list)


@dataclass
class CarpoolGroup:
    host_booking_id: int
    id: Optional[int] = None
    status: GroupStatus = GroupStatus.ACTIVE
    member_booking_ids: list[int] = field(default_factory=list)
    combined_route: Optional[CombinedRoute] = None
    pre_merge_distance: Optional[float] = None
    post_merge_distance: Optional[float] = None
    detour_percentage: Optional[float] = None
    shared_cost: Optional[SharedCostSummary] = None
    cost_mode: Optional[CostMode] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def transition_to(self, new_status: GroupStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = GROUP_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition carpool group from {self.status.value} "
                f"to {new_status.value}"
            )
        self.status = new_status


@dataclass
class CarpoolInvite:
    carpool_group_id: int
    host_booking_id: int
    joiner_booking_id: int
    expires_at: datetime
    id: Optional[int] = None
    consent_status: ConsentStatus = ConsentStatus.PENDING
    responded_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.consent_status in TERMINAL_CONSENT_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class CarpoolCandidate:
    booking_id: int
    route_similarity: float
    time_difference: float  # minutes
    total_passengers: int
    can_fit: bool
    booking_number: str = ""
    requester_id: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    passenger_count: int = 0
    origin: str = ""
    destination: str = ""


@dataclass
class AuditLogEntry:
    action_type: AuditAction
    actor_id: str
    carpool_group_id: Optional[int] = None
    host_booking_id: Optional[int] = None
    joiner_booking_id: Optional[int] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    metadata: Optional[dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    id: Optional[int] = None
