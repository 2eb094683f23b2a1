"""
Candidate Matcher -- finds bookings that could share a trip with a host.

Pool query: status in {DRAFT, SUBMITTED, APPROVED_L1}, start inside
``host start +/- window``, not grouped, not the host itself.  Each pooled
booking with a segment is scored concurrently; see
``carpool.domain.matching`` for the scoring and ranking rules.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from carpool.domain.clock import ensure_utc
from carpool.domain.entities import Booking, CarpoolCandidate, DraftTrip, Segment
from carpool.domain.enums import CANDIDATE_POOL_STATUSES, BookingStatus
from carpool.domain.errors import InvalidStateError, NotFoundError
from carpool.domain.matching import (
    rank_candidates,
    string_route_similarity,
    time_difference_minutes,
)
from carpool.infrastructure.repositories import BookingRepository
from carpool.services.config_provider import CarpoolConfig, ConfigProvider
from carpool.services.route_estimator import RouteEstimator

logger = logging.getLogger(__name__)


class CandidateMatcher:
    def __init__(
        self,
        bookings: BookingRepository,
        config_provider: ConfigProvider,
        estimator: RouteEstimator,
    ):
        self.bookings = bookings
        self.config_provider = config_provider
        self.estimator = estimator

    async def find_candidates(self, host_booking_id: int) -> list[CarpoolCandidate]:
        host = await self.bookings.get_by_id(host_booking_id)
        if host is None:
            raise NotFoundError(f"Host booking with ID {host_booking_id} not found")
        if host.status == BookingStatus.MERGED:
            raise InvalidStateError("Host booking is already merged")
        if host.primary_segment is None:
            raise InvalidStateError("Host booking has no segments")

        config = await self.config_provider.get_config()
        pool = await self._pool(
            host.start_at, config, exclude_booking_id=host.id
        )
        host_segment = host.primary_segment
        host_path = (
            host_segment.route_polyline if host_segment.has_validated_path else None
        )

        return await self._score_all(
            pool,
            host_segment=host_segment,
            host_path=host_path,
            host_start=host.start_at,
            host_passengers=host.passenger_count,
            config=config,
        )

    async def find_candidates_for_draft(
        self, draft: DraftTrip, exclude_requester_id: Optional[str] = None
    ) -> list[CarpoolCandidate]:
        """Same search for a trip that has not been saved as a booking yet."""
        config = await self.config_provider.get_config()
        start_at = ensure_utc(draft.start_at)
        pool = await self._pool(
            start_at, config, exclude_requester_id=exclude_requester_id
        )

        host_path = None
        if any(
            c.primary_segment is not None and c.primary_segment.has_validated_path
            for c in pool
        ):
            host_path = await self._draft_path(draft.segment)

        return await self._score_all(
            pool,
            host_segment=draft.segment,
            host_path=host_path,
            host_start=start_at,
            host_passengers=draft.passenger_count,
            config=config,
        )

    # ── internals ─────────────────────────────────────────────────────

    async def _pool(
        self,
        host_start: datetime,
        config: CarpoolConfig,
        exclude_booking_id: Optional[int] = None,
        exclude_requester_id: Optional[str] = None,
    ) -> list[Booking]:
        window = timedelta(minutes=config.time_window_minutes)
        return await self.bookings.find_pool(
            window_start=host_start - window,
            window_end=host_start + window,
            statuses=CANDIDATE_POOL_STATUSES,
            exclude_booking_id=exclude_booking_id,
            exclude_requester_id=exclude_requester_id,
        )

    async def _draft_path(self, segment: Segment) -> Optional[str]:
        if segment.has_validated_path:
            return segment.route_polyline
        if segment.origin_location is None or segment.destination_location is None:
            return None
        try:
            estimate = await self.estimator.estimate_route(
                segment.origin_location, segment.destination_location
            )
        except Exception:
            logger.warning("Route estimate for draft trip failed", exc_info=True)
            return None
        return estimate.polyline

    async def _score_all(
        self,
        pool: list[Booking],
        *,
        host_segment: Segment,
        host_path: Optional[str],
        host_start: datetime,
        host_passengers: int,
        config: CarpoolConfig,
    ) -> list[CarpoolCandidate]:
        scored = await asyncio.gather(
            *(
                self._score(
                    candidate,
                    host_segment=host_segment,
                    host_path=host_path,
                    host_start=host_start,
                    host_passengers=host_passengers,
                    config=config,
                )
                for candidate in pool
                if candidate.primary_segment is not None
            )
        )
        return rank_candidates(
            scored, config.time_window_minutes, config.route_similarity_threshold
        )

    async def _score(
        self,
        candidate: Booking,
        *,
        host_segment: Segment,
        host_path: Optional[str],
        host_start: datetime,
        host_passengers: int,
        config: CarpoolConfig,
    ) -> CarpoolCandidate:
        segment = candidate.primary_segment
        similarity = await self._route_similarity(host_segment, host_path, segment)
        total_passengers = host_passengers + candidate.passenger_count

        return CarpoolCandidate(
            booking_id=candidate.id,
            booking_number=candidate.booking_number,
            requester_id=candidate.requester_id,
            start_at=candidate.start_at,
            end_at=candidate.end_at,
            passenger_count=candidate.passenger_count,
            origin=segment.origin,
            destination=segment.destination,
            route_similarity=similarity,
            time_difference=time_difference_minutes(host_start, candidate.start_at),
            total_passengers=total_passengers,
            can_fit=total_passengers <= config.max_vehicle_seat_capacity,
        )

    async def _route_similarity(
        self, host_segment: Segment, host_path: Optional[str], segment: Segment
    ) -> float:
        if host_path and segment.has_validated_path:
            try:
                return await self.estimator.similarity(host_path, segment.route_polyline)
            except Exception:
                logger.warning(
                    "Path similarity failed, using text heuristic", exc_info=True
                )
        return string_route_similarity(
            host_segment.origin,
            host_segment.destination,
            segment.origin,
            segment.destination,
        )
