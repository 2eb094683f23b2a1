"""
Shared Trip Cost Engine  (Strategy Pattern)
===========================================

Formula
-------
Cost = D x Base_Rate_Per_KM
     + (D / Fuel_Efficiency_KM_Per_Liter) x Fuel_Price_Per_Liter
     + D x Toll_Rate_Per_KM
     + (T / 60) x Driver_Rate_Per_Hour

with D the trip distance in km and T its duration in minutes.

Allocation
----------
* **EQUAL**: every participant pays total / N.
* **PROPORTIONAL_DISTANCE**: each participant pays in proportion to their
  own segment distance.  With no distance information at all the split
  degrades to EQUAL so shares still add up to the total.

Complexity: O(1) per cost calculation, O(N) per allocation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from .entities import Booking, CostShare, SharedCostSummary
from .enums import CostMode


@dataclass(frozen=True)
class CostRates:
    base_rate_per_km: float = 5_000.0
    fuel_price_per_liter: float = 10_000.0
    fuel_efficiency_km_per_liter: float = 10.0
    toll_rate_per_km: float = 2_000.0
    driver_rate_per_hour: float = 50_000.0


class TripCostModel:
    def __init__(self, rates: CostRates | None = None):
        self.rates = rates or CostRates()

    def distance_cost(self, distance_km: float) -> float:
        r = self.rates
        return (
            distance_km * r.base_rate_per_km
            + (distance_km / r.fuel_efficiency_km_per_liter) * r.fuel_price_per_liter
            + distance_km * r.toll_rate_per_km
        )

    def trip_cost(self, distance_km: float, duration_minutes: float) -> float:
        driver = (duration_minutes / 60) * self.rates.driver_rate_per_hour
        return self.distance_cost(distance_km) + driver


# ── Strategy hierarchy ────────────────────────────────────────────────


class CostAllocationStrategy(ABC):
    mode: CostMode

    @abstractmethod
    def weights(self, distances: Sequence[float]) -> list[float]:
        """Return one weight per participant; weights sum to 1."""

    def allocate(
        self, participants: Sequence[Booking], total_cost: float
    ) -> SharedCostSummary:
        distances = [b.distance_km or 0.0 for b in participants]
        weights = self.weights(distances) if participants else []
        breakdown = [
            CostShare(
                booking_id=booking.id,
                booking_number=booking.booking_number,
                requester_id=booking.requester_id,
                distance=distance,
                cost_share=weight * total_cost,
                percentage=weight * 100,
            )
            for booking, distance, weight in zip(participants, distances, weights)
        ]
        return SharedCostSummary(
            total_cost=total_cost, cost_mode=self.mode, breakdown=breakdown
        )


class EqualAllocation(CostAllocationStrategy):
    mode = CostMode.EQUAL

    def weights(self, distances: Sequence[float]) -> list[float]:
        n = len(distances)
        return [1 / n] * n


class ProportionalDistanceAllocation(CostAllocationStrategy):
    mode = CostMode.PROPORTIONAL_DISTANCE

    def weights(self, distances: Sequence[float]) -> list[float]:
        total = sum(distances)
        if total <= 0:
            return EqualAllocation().weights(distances)
        return [d / total for d in distances]


ALLOCATION_STRATEGIES: dict[CostMode, CostAllocationStrategy] = {
    CostMode.EQUAL: EqualAllocation(),
    CostMode.PROPORTIONAL_DISTANCE: ProportionalDistanceAllocation(),
}


def allocate_shared_cost(
    participants: Sequence[Booking], total_cost: float, mode: CostMode
) -> SharedCostSummary:
    try:
        strategy = ALLOCATION_STRATEGIES[CostMode(mode)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown cost mode: {mode}") from None
    return strategy.allocate(participants, total_cost)
