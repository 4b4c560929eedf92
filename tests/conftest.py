"""
Shared fixtures: an all-in-memory service container with a controllable clock.
"""
import pytest

from app.config import Settings
from app.dependencies import build_services
from app.repositories.memory import InMemoryRideRepository
from app.services.driver_pool import InMemoryDriverPool
from app.services.events import InMemoryEventSink
from app.services.payment_provider import SandboxPaymentProvider
from tests.factories import FixedClock, make_driver


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        external_call_backoff_seconds=0.0,
        external_call_timeout_seconds=1.0,
        psp_timeout_seconds=1,
    )


@pytest.fixture
def driver_pool():
    return InMemoryDriverPool([make_driver()])


@pytest.fixture
def provider():
    return SandboxPaymentProvider()


@pytest.fixture
def events():
    return InMemoryEventSink()


@pytest.fixture
def repository():
    return InMemoryRideRepository()


@pytest.fixture
def services(settings, repository, driver_pool, provider, events, clock):
    return build_services(settings, repository, driver_pool, provider, events, clock=clock)
