"""
FastAPI application factory.

* Registers the carpool and admin routes.
* Closes the shared route estimator's HTTP client on shutdown.
* Renders every ``CarpoolError`` as ``{"detail": message}`` with its status.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from carpool.api.dependencies import get_route_estimator
from carpool.api.middleware import limiter
from carpool.api.routes import admin, carpool
from carpool.config import settings
from carpool.domain.errors import CarpoolError

logging.basicConfig(level=settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await get_route_estimator().close()


async def carpool_error_handler(request: Request, exc: CarpoolError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Carpool Coordination API",
        description=(
            "Finds bookings that can share a vehicle, collects both sides' "
            "consent, merges them into one trip with a combined route and "
            "splits the shared cost."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(CarpoolError, carpool_error_handler)

    # Routers
    app.include_router(carpool.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
