"""
Effective carpool tunables and cost rates.

Values come from the latest *Published* parameter set (group ``CARPOOL``)
and from the active cost-variable registry.  Anything missing, unparseable,
non-finite or not positive keeps the default from ``Settings``.  Neither
read ever raises: on a database failure the defaults are returned and a
warning is logged.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.config import Settings, settings as default_settings
from carpool.domain.clock import utc_now
from carpool.domain.pricing import CostRates
from carpool.infrastructure.repositories import (
    CostVariableRepository,
    ParamSetRepository,
)

logger = logging.getLogger(__name__)

PARAM_GROUP = "CARPOOL"

# param item name -> (CarpoolConfig field, numeric type)
_PARAM_ITEMS: dict[str, tuple[str, type]] = {
    "TIME_WINDOW_MINUTES": ("time_window_minutes", int),
    "ROUTE_SIMILARITY_THRESHOLD": ("route_similarity_threshold", float),
    "MAX_DETOUR_PERCENTAGE": ("max_detour_percentage", float),
    "DEFAULT_INVITE_EXPIRY_MINUTES": ("default_invite_expiry_minutes", int),
    "MAX_VEHICLE_SEAT_CAPACITY": ("max_vehicle_seat_capacity", int),
}

# cost variable code -> CostRates field
_COST_CODES: dict[str, str] = {
    "BASE_RATE_PER_KM": "base_rate_per_km",
    "FUEL_PRICE_PER_LITER": "fuel_price_per_liter",
    "FUEL_EFFICIENCY_KM_PER_LITER": "fuel_efficiency_km_per_liter",
    "TOLL_RATE_PER_KM": "toll_rate_per_km",
    "DRIVER_RATE_PER_HOUR": "driver_rate_per_hour",
}


def _parse_positive(raw: str, kind: type) -> Optional[float]:
    try:
        number = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    parsed = kind(number)
    return parsed if parsed > 0 else None


@dataclass(frozen=True)
class CarpoolConfig:
    time_window_minutes: int
    route_similarity_threshold: float
    max_detour_percentage: float
    default_invite_expiry_minutes: int
    max_vehicle_seat_capacity: int


class ConfigProvider:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        clock=utc_now,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.clock = clock

    def default_config(self) -> CarpoolConfig:
        s = self.settings
        return CarpoolConfig(
            time_window_minutes=s.carpool_time_window_minutes,
            route_similarity_threshold=s.carpool_route_similarity_threshold,
            max_detour_percentage=s.carpool_max_detour_percentage,
            default_invite_expiry_minutes=s.carpool_default_invite_expiry_minutes,
            max_vehicle_seat_capacity=s.carpool_max_vehicle_seat_capacity,
        )

    def default_cost_rates(self) -> CostRates:
        s = self.settings
        return CostRates(
            base_rate_per_km=s.cost_base_rate_per_km,
            fuel_price_per_liter=s.cost_fuel_price_per_liter,
            fuel_efficiency_km_per_liter=s.cost_fuel_efficiency_km_per_liter,
            toll_rate_per_km=s.cost_toll_rate_per_km,
            driver_rate_per_hour=s.cost_driver_rate_per_hour,
        )

    async def get_config(self) -> CarpoolConfig:
        defaults = self.default_config()
        try:
            async with self.session_factory() as session:
                items = await ParamSetRepository(session).latest_published_items(
                    PARAM_GROUP
                )
        except Exception:
            logger.warning(
                "Failed to read carpool parameters, using defaults", exc_info=True
            )
            return defaults

        values = vars(defaults).copy()
        for name, (field_name, kind) in _PARAM_ITEMS.items():
            raw = items.get(name)
            if raw is None:
                continue
            parsed = _parse_positive(raw, kind)
            if parsed is None:
                logger.info("Ignoring unusable %s=%r", name, raw)
                continue
            values[field_name] = parsed
        return CarpoolConfig(**values)

    async def get_cost_rates(self) -> CostRates:
        defaults = self.default_cost_rates()
        try:
            async with self.session_factory() as session:
                stored = await CostVariableRepository(session).active_values(
                    _COST_CODES.keys(), self.clock()
                )
        except Exception:
            logger.warning("Failed to read cost variables, using defaults", exc_info=True)
            return defaults

        values = vars(defaults).copy()
        for code, field_name in _COST_CODES.items():
            value = stored.get(code)
            if value is not None and value > 0:
                values[field_name] = float(value)
        return CostRates(**values)
