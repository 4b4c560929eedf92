"""
Service wiring.

The container is built once in the app lifespan and stored on `app.state`;
routers pull it in with `Depends(get_container)`. Tests build their own
container with fakes and put it on the app instead.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import Settings, get_settings
from app.errors import http_status_for
from app.repositories.base import RideRepository
from app.repositories.memory import InMemoryRideRepository
from app.services.driver_pool import DriverPool, InMemoryDriverPool, RedisDriverPool
from app.services.dispatch import DispatchOrchestrator
from app.services.events import EventSink, LoggingEventSink, RedisEventSink
from app.services.lifecycle import RideLifecycle
from app.services.locks import KeyedLock
from app.services.matching import DriverMatcher
from app.services.payment import PaymentSettlement
from app.services.payment_provider import HttpPaymentProvider, PaymentProvider, SandboxPaymentProvider
from app.services.pricing import FareCalculator
from app.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    repository: RideRepository
    driver_pool: DriverPool
    provider: PaymentProvider
    events: EventSink
    fares: FareCalculator
    matcher: DriverMatcher
    lifecycle: RideLifecycle
    payments: PaymentSettlement
    dispatch: DispatchOrchestrator
    resources: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        for resource in self.resources:
            if hasattr(resource, "aclose"):
                await resource.aclose()
            else:
                await resource.dispose()  # AsyncEngine


def build_services(
    settings: Settings,
    repository: RideRepository,
    driver_pool: DriverPool,
    provider: PaymentProvider,
    events: Optional[EventSink] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    clock=None,
) -> ServiceContainer:
    """Assemble the core services around the given adapters."""
    locks = KeyedLock()
    extra = {"clock": clock} if clock is not None else {}
    events = events or LoggingEventSink()
    fares = FareCalculator.from_settings(settings)
    matcher = DriverMatcher(
        max_alternatives=settings.matching_alternatives,
        pickup_speed_kmh=settings.pickup_speed_kmh,
    )
    lifecycle = RideLifecycle(
        repository,
        driver_pool,
        fares,
        events,
        locks=locks,
        event_timeout_seconds=settings.external_call_timeout_seconds,
        **extra,
    )
    payments = PaymentSettlement(
        repository,
        provider,
        rate_limiter=rate_limiter or SlidingWindowRateLimiter(
            settings.capture_rate_limit_attempts,
            settings.capture_rate_limit_window_seconds,
            **extra,
        ),
        locks=locks,
        timeout_seconds=settings.psp_timeout_seconds,
        preauth_enabled=settings.payment_preauth_enabled,
        **extra,
    )
    dispatch = DispatchOrchestrator(
        lifecycle,
        payments,
        matcher,
        fares,
        driver_pool,
        repository,
        locks=locks,
        matching_radius_km=settings.matching_radius_km,
        trip_speed_kmh=settings.trip_speed_kmh,
        call_timeout_seconds=settings.external_call_timeout_seconds,
        max_retries=settings.external_call_max_retries,
        backoff_seconds=settings.external_call_backoff_seconds,
        **extra,
    )
    return ServiceContainer(
        settings=settings,
        repository=repository,
        driver_pool=driver_pool,
        provider=provider,
        events=events,
        fares=fares,
        matcher=matcher,
        lifecycle=lifecycle,
        payments=payments,
        dispatch=dispatch,
    )


async def build_container(settings: Optional[Settings] = None) -> ServiceContainer:
    """Pick adapters from settings: memory/postgres, memory/redis, sandbox/http, log/redis."""
    settings = settings or get_settings()
    resources: list[Any] = []

    if settings.storage_backend == "postgres":
        from app.database import build_engine, build_session_factory
        from app.repositories.sql import SqlAlchemyRideRepository

        engine = build_engine(settings.database_url)
        resources.append(engine)
        repository: RideRepository = SqlAlchemyRideRepository(build_session_factory(engine))
    else:
        repository = InMemoryRideRepository()

    redis = None
    if settings.driver_pool_backend == "redis" or settings.event_sink == "redis":
        from app.redis_client import get_redis

        redis = await get_redis()

    driver_pool: DriverPool = RedisDriverPool(redis) if settings.driver_pool_backend == "redis" else InMemoryDriverPool()
    events: EventSink = (
        RedisEventSink(redis, settings.ride_events_channel) if settings.event_sink == "redis" else LoggingEventSink()
    )

    if settings.payment_provider == "http":
        provider: PaymentProvider = HttpPaymentProvider(
            settings.psp_base_url, settings.psp_api_key, settings.psp_timeout_seconds
        )
        resources.append(provider)
    else:
        provider = SandboxPaymentProvider()

    logger.info(
        "Services: storage=%s drivers=%s payments=%s events=%s",
        settings.storage_backend, settings.driver_pool_backend, settings.payment_provider, settings.event_sink,
    )
    container = build_services(settings, repository, driver_pool, provider, events)
    container.resources = resources
    return container


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def result_response(result: BaseModel, success_status: int = 200) -> JSONResponse:
    """Serialize a service result, mapping its error (if any) to an HTTP status."""
    status_code = success_status if result.success else http_status_for(result.error)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))
