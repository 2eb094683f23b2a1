"""
Shared test fixtures.

Every test gets its own SQLite database file (via aiosqlite) built from the
production models, so tests run without Docker / PostgreSQL / Redis.  The
helpers below seed bookings and the read-only registries.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from carpool.config import Settings
from carpool.domain.clock import utc_now
from carpool.domain.enums import BookingStatus, ConsentStatus
from carpool.infrastructure.database import Base
from carpool.infrastructure.models import (
    BookingModel,
    CostVariableModel,
    ParamItemModel,
    ParamSetModel,
    SegmentModel,
)
from carpool.infrastructure.repositories import CarpoolUnitOfWork
from carpool.services.audit_log import AuditLog
from carpool.services.config_provider import ConfigProvider
from carpool.services.orchestrator import CarpoolOrchestrator
from carpool.services.route_estimator import RouteEstimator

BASE_TIME = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


# ── Test DB (SQLite file per test) ────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'carpool.db'}", echo=False
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def estimator() -> AsyncMock:
    """Route estimator double; bookings without paths never reach it."""
    return AsyncMock(spec=RouteEstimator)


@pytest.fixture
def make_orchestrator(db_session, session_factory, estimator, test_settings):
    def _make(session=None, clock=utc_now, **kwargs) -> CarpoolOrchestrator:
        return CarpoolOrchestrator(
            CarpoolUnitOfWork(session or db_session),
            config_provider=ConfigProvider(session_factory, settings=test_settings),
            estimator=kwargs.pop("estimator", estimator),
            audit_log=AuditLog(session_factory, clock=clock),
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> CarpoolOrchestrator:
    return make_orchestrator()


# ── Seed helpers ──────────────────────────────────────────────────────


async def add_booking(
    session_factory,
    *,
    start_at: datetime = BASE_TIME,
    end_at: Optional[datetime] = None,
    origin: str = "Jakarta",
    destination: str = "Bandung",
    passenger_count: int = 1,
    status: BookingStatus = BookingStatus.SUBMITTED,
    requester_id: Optional[str] = "user-1",
    est_km: Optional[float] = None,
    route_polyline: Optional[str] = None,
    geocode_validated: bool = False,
    carpool_group_id: Optional[int] = None,
    with_segment: bool = True,
    booking_number: Optional[str] = None,
) -> int:
    async with session_factory() as session:
        booking = BookingModel(
            booking_number=booking_number or "",
            requester_id=requester_id,
            start_at=start_at,
            end_at=end_at or start_at + timedelta(hours=1),
            passenger_count=passenger_count,
            booking_status=status,
            carpool_group_id=carpool_group_id,
        )
        session.add(booking)
        await session.flush()
        if not booking_number:
            booking.booking_number = f"BK-{booking.id:04d}"
        if with_segment:
            session.add(
                SegmentModel(
                    booking_id=booking.id,
                    segment_no=1,
                    origin=origin,
                    destination=destination,
                    route_polyline=route_polyline,
                    geocode_validated=geocode_validated,
                    est_km=est_km,
                )
            )
        await session.commit()
        return booking.id


async def add_param_set(session_factory, version: int, items: dict, status="Published"):
    async with session_factory() as session:
        param_set = ParamSetModel(version=version, status=status)
        session.add(param_set)
        await session.flush()
        for name, value in items.items():
            session.add(
                ParamItemModel(
                    param_set_id=param_set.id, group="CARPOOL", name=name, value=value
                )
            )
        await session.commit()


async def add_cost_variable(session_factory, code: str, value: float, **kwargs):
    async with session_factory() as session:
        session.add(
            CostVariableModel(
                code=code,
                name=code.replace("_", " ").title(),
                category="CARPOOL",
                unit="IDR",
                value=value,
                effective_from=kwargs.pop(
                    "effective_from", datetime(2020, 1, 1, tzinfo=timezone.utc)
                ),
                **kwargs,
            )
        )
        await session.commit()


async def seed_approved_group(
    orchestrator: CarpoolOrchestrator,
    session_factory,
    *,
    host_km: Optional[float] = 25,
    joiner_km: Optional[float] = 20,
) -> tuple[int, int, int]:
    """Host 10:00-11:00 plus one approved joiner 10:20-11:10.

    With the default 25 + 20 km estimates the 4-waypoint route (40 km)
    is shorter than the separate trips, so the merge passes the detour
    check.  Returns ``(host_id, joiner_id, group_id)``.
    """
    host = await add_booking(session_factory, est_km=host_km, requester_id="user-1")
    joiner = await add_booking(
        session_factory,
        start_at=BASE_TIME + timedelta(minutes=20),
        end_at=BASE_TIME + timedelta(minutes=70),
        est_km=joiner_km,
        requester_id="user-2",
    )
    invite = await orchestrator.invite(host, joiner, "user-1")
    await orchestrator.respond_to_invite(invite.id, ConsentStatus.APPROVED, "user-2")
    return host, joiner, invite.carpool_group_id
