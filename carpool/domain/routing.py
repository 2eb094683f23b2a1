"""
Combined Route Synthesis  (Strategy Pattern for distance)
=========================================================

Waypoint order
--------------
1. One PICKUP per member at the booking's start time -- host first, then
   the approved joiners in invite order.
2. One DROP per member at the booking's end time, drops sorted by time.

Distance / duration
-------------------
* ``total_distance`` comes from a ``RouteDistanceStrategy``.  The default
  ``PerWaypointDistance`` charges a flat 10 km per waypoint;
  ``HaversineLegDistance`` sums straight-line legs when every waypoint has
  coordinates.
* ``total_duration`` is the span between the first and last waypoint
  times, in minutes, never negative.

Detour
------
  detour % = max(0, (combined - original) / original x 100)

where *original* sums every member's own segment estimate (10 km when a
member has none).

Complexity: O(k log k) for k members.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from .distance import haversine_km
from .entities import Booking, CombinedRoute, Waypoint
from .enums import WaypointType

KM_PER_WAYPOINT = 10.0
DEFAULT_SEGMENT_KM = 10.0


# ── Strategy hierarchy ────────────────────────────────────────────────


class RouteDistanceStrategy(ABC):
    @abstractmethod
    def total_distance(self, waypoints: Sequence[Waypoint]) -> float: ...


class PerWaypointDistance(RouteDistanceStrategy):
    def __init__(self, km_per_waypoint: float = KM_PER_WAYPOINT):
        self.km_per_waypoint = km_per_waypoint

    def total_distance(self, waypoints: Sequence[Waypoint]) -> float:
        if len(waypoints) < 2:
            return 0.0
        return len(waypoints) * self.km_per_waypoint


class HaversineLegDistance(RouteDistanceStrategy):
    """Sum of great-circle legs along the waypoint sequence."""

    def __init__(self, fallback: RouteDistanceStrategy | None = None):
        self.fallback = fallback or PerWaypointDistance()

    def total_distance(self, waypoints: Sequence[Waypoint]) -> float:
        if len(waypoints) < 2:
            return 0.0
        if any(w.coordinates is None for w in waypoints):
            return self.fallback.total_distance(waypoints)

        total = 0.0
        for a, b in zip(waypoints, waypoints[1:]):
            total += haversine_km(
                a.coordinates.latitude, a.coordinates.longitude,
                b.coordinates.latitude, b.coordinates.longitude,
            )
        return total


DISTANCE_STRATEGIES: dict[str, type[RouteDistanceStrategy]] = {
    "per_waypoint": PerWaypointDistance,
    "haversine": HaversineLegDistance,
}


# ── Synthesis ─────────────────────────────────────────────────────────


def build_waypoints(host: Booking, joiners: Sequence[Booking]) -> list[Waypoint]:
    members = [b for b in (host, *joiners) if b.primary_segment is not None]
    waypoints: list[Waypoint] = []

    for booking in members:
        segment = booking.primary_segment
        waypoints.append(
            Waypoint(
                booking_id=booking.id,
                booking_number=booking.booking_number,
                type=WaypointType.PICKUP,
                location=segment.origin,
                coordinates=segment.origin_location,
                passenger_count=booking.passenger_count,
                sequence=len(waypoints) + 1,
                estimated_time=booking.start_at,
            )
        )

    # sorted() is stable, so equal end times keep member order
    for booking in sorted(members, key=lambda b: b.end_at):
        segment = booking.primary_segment
        waypoints.append(
            Waypoint(
                booking_id=booking.id,
                booking_number=booking.booking_number,
                type=WaypointType.DROP,
                location=segment.destination,
                coordinates=segment.destination_location,
                passenger_count=booking.passenger_count,
                sequence=len(waypoints) + 1,
                estimated_time=booking.end_at,
            )
        )

    return waypoints


def total_duration_minutes(waypoints: Sequence[Waypoint]) -> float:
    if not waypoints:
        return 0.0
    span = waypoints[-1].estimated_time - waypoints[0].estimated_time
    return max(0.0, span.total_seconds() / 60)


def original_distance(members: Sequence[Booking]) -> float:
    """Sum of every member's independent trip estimate."""
    return sum(
        b.distance_km if b.distance_km is not None else DEFAULT_SEGMENT_KM
        for b in members
    )


def detour_percentage(combined_km: float, original_km: float) -> float:
    if original_km <= 0:
        return 0.0
    return max(0.0, (combined_km - original_km) / original_km * 100)


def calculate_combined_route(
    host: Booking,
    joiners: Sequence[Booking],
    strategy: RouteDistanceStrategy | None = None,
) -> CombinedRoute:
    strategy = strategy or PerWaypointDistance()
    waypoints = build_waypoints(host, joiners)
    total_distance = strategy.total_distance(waypoints)

    return CombinedRoute(
        waypoints=waypoints,
        total_distance=total_distance,
        total_duration=total_duration_minutes(waypoints),
        detour_percentage=detour_percentage(
            total_distance, original_distance([host, *joiners])
        ),
    )
