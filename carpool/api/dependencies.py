"""FastAPI dependency injection helpers."""

from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.config import settings
from carpool.domain.routing import DISTANCE_STRATEGIES
from carpool.infrastructure.database import async_session_factory
from carpool.infrastructure.locks import GroupLockFactory
from carpool.infrastructure.redis_client import get_redis
from carpool.infrastructure.repositories import CarpoolUnitOfWork
from carpool.services.audit_log import AuditLog
from carpool.services.config_provider import ConfigProvider
from carpool.services.orchestrator import SYSTEM_ACTOR, CarpoolOrchestrator
from carpool.services.route_estimator import RouteEstimator, build_route_cache


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield an async DB session; services decide when to commit."""
    async with async_session_factory() as session:
        yield session


@lru_cache
def get_route_estimator() -> RouteEstimator:
    """Process-wide estimator so the HTTP connection pool is reused."""
    return RouteEstimator(
        cache=build_route_cache(get_redis(), settings.route_cache_ttl_seconds)
    )


@lru_cache
def get_lock_factory() -> GroupLockFactory:
    return GroupLockFactory(get_redis(), ttl_seconds=settings.merge_lock_ttl_seconds)


async def get_orchestrator(
    db: AsyncSession = Depends(get_db),
) -> CarpoolOrchestrator:
    return CarpoolOrchestrator(
        CarpoolUnitOfWork(db),
        config_provider=ConfigProvider(async_session_factory),
        estimator=get_route_estimator(),
        audit_log=AuditLog(async_session_factory),
        locks=get_lock_factory(),
        distance_strategy=DISTANCE_STRATEGIES[
            settings.combined_route_distance_strategy
        ](),
    )


async def get_actor_id(x_user_id: str = Header(SYSTEM_ACTOR)) -> str:
    return x_user_id
