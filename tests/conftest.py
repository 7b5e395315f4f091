import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DEV_MODE", "true")
os.environ.setdefault("CODE_HASH_ROUNDS", "4")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from vibeauth.service.delivery import DeliveryMessage  # noqa: E402
from vibeauth.service.provider import IdentityProvider  # noqa: E402
from vibeauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from vibeauth.storage.schema import SchemaMigrator  # noqa: E402
from vibeauth.storage.sqlite import SqliteAdapter  # noqa: E402

ORIGIN = "http://localhost:3000"


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeDelivery:
    """Records every message; ``fail`` makes ``send`` raise like a broken gateway."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.messages: list[DeliveryMessage] = []

    async def send(self, message: DeliveryMessage) -> bool:
        if self.fail:
            raise ConnectionError("gateway unavailable")
        self.messages.append(message)
        return True

    @property
    def last(self) -> DeliveryMessage:
        return self.messages[-1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def db():
    adapter = SqliteAdapter(":memory:")
    SchemaMigrator(adapter).migrate()
    yield adapter
    adapter.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def email_delivery():
    return FakeDelivery()


@pytest.fixture
def sms_delivery():
    return FakeDelivery()


@pytest.fixture
def provider(db, clock, email_delivery, sms_delivery):
    return IdentityProvider(
        db,
        code_rounds=4,
        origin=ORIGIN,
        email_delivery=email_delivery,
        sms_delivery=sms_delivery,
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
