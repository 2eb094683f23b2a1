"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from carpool.domain.clock import ensure_utc
from carpool.domain.entities import DraftTrip, Location, Segment
from carpool.domain.enums import (
    AuditAction,
    ConsentStatus,
    CostMode,
    GroupStatus,
    WaypointType,
)


# ── Requests ──────────────────────────────────────────────────────────


class DraftSegmentRequest(BaseModel):
    origin: str = Field(..., min_length=1, max_length=255)
    destination: str = Field(..., min_length=1, max_length=255)
    origin_lat_long: Optional[str] = Field(None, description='"lat,lng"')
    destination_lat_long: Optional[str] = Field(None, description='"lat,lng"')
    route_polyline: Optional[str] = None
    geocode_validated: bool = False
    est_km: Optional[float] = Field(None, ge=0)

    @field_validator("origin_lat_long", "destination_lat_long")
    @classmethod
    def _check_lat_long(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            Location.parse(value)
        return value

    def to_segment(self) -> Segment:
        return Segment(
            origin=self.origin,
            destination=self.destination,
            origin_location=(
                Location.parse(self.origin_lat_long) if self.origin_lat_long else None
            ),
            destination_location=(
                Location.parse(self.destination_lat_long)
                if self.destination_lat_long
                else None
            ),
            route_polyline=self.route_polyline,
            geocode_validated=self.geocode_validated,
            est_km=self.est_km,
        )


class PreSubmitCandidatesRequest(BaseModel):
    start_at: datetime
    end_at: datetime
    passenger_count: int = Field(1, ge=1)
    segment: DraftSegmentRequest
    requester_id: Optional[str] = Field(
        None, description="Exclude this requester's own bookings from the pool."
    )

    @field_validator("start_at", "end_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> "PreSubmitCandidatesRequest":
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self

    def to_draft(self) -> DraftTrip:
        return DraftTrip(
            start_at=self.start_at,
            end_at=self.end_at,
            passenger_count=self.passenger_count,
            segment=self.segment.to_segment(),
        )


class InviteRequest(BaseModel):
    host_booking_id: int
    joiner_booking_id: int
    expires_in_minutes: Optional[int] = Field(
        None, description="Defaults to the configured invite expiry."
    )


class RespondInviteRequest(BaseModel):
    decision: str = Field(..., description="APPROVED or DECLINED")


class MergeRequest(BaseModel):
    carpool_group_id: int
    cost_mode: CostMode = CostMode.EQUAL


class UnmergeRequest(BaseModel):
    carpool_group_id: int


# ── Responses ─────────────────────────────────────────────────────────


class CandidateResponse(BaseModel):
    booking_id: int
    booking_number: str
    requester_id: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    passenger_count: int
    origin: str
    destination: str
    route_similarity: float
    time_difference: float
    total_passengers: int
    can_fit: bool

    model_config = {"from_attributes": True}


class InviteResponse(BaseModel):
    id: int
    carpool_group_id: int
    host_booking_id: int
    joiner_booking_id: int
    consent_status: ConsentStatus
    expires_at: datetime
    responded_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class LocationResponse(BaseModel):
    latitude: float
    longitude: float

    model_config = {"from_attributes": True}


class WaypointResponse(BaseModel):
    booking_id: int
    booking_number: str
    type: WaypointType
    location: str
    coordinates: Optional[LocationResponse] = None
    passenger_count: int
    sequence: int
    estimated_time: datetime

    model_config = {"from_attributes": True}


class CombinedRouteResponse(BaseModel):
    waypoints: list[WaypointResponse] = []
    total_distance: float
    total_duration: float
    detour_percentage: float

    model_config = {"from_attributes": True}


class CostShareResponse(BaseModel):
    booking_id: int
    booking_number: str
    requester_id: Optional[str] = None
    distance: float
    cost_share: float
    percentage: float

    model_config = {"from_attributes": True}


class SharedCostResponse(BaseModel):
    total_cost: float
    cost_mode: CostMode
    breakdown: list[CostShareResponse] = []

    model_config = {"from_attributes": True}


class CarpoolGroupResponse(BaseModel):
    id: int
    host_booking_id: int
    status: GroupStatus
    member_booking_ids: list[int] = []
    combined_route: Optional[CombinedRouteResponse] = None
    pre_merge_distance: Optional[float] = None
    post_merge_distance: Optional[float] = None
    detour_percentage: Optional[float] = None
    shared_cost: Optional[SharedCostResponse] = None
    cost_mode: Optional[CostMode] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AuditLogResponse(BaseModel):
    id: int
    carpool_group_id: Optional[int] = None
    host_booking_id: Optional[int] = None
    joiner_booking_id: Optional[int] = None
    action_type: AuditAction
    actor_id: str
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    metadata: Optional[dict[str, Any]] = None
    timestamp: datetime

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
