from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from contacthub.core.config import get_settings  # noqa: E402
from contacthub.core.errors import DeliveryError  # noqa: E402
from contacthub.services.providers import ProviderReceipt  # noqa: E402

TEST_DB_PATH = ROOT / "test.db"
if TEST_DB_PATH.exists():
    TEST_DB_PATH.unlink()
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
get_settings.cache_clear()

OWNER = {"X-User-Id": "owner-1", "X-User-Name": "Jamie Rivera"}


class FakeClock:
    """Naive-UTC wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class VirtualTime:
    """Monotonic clock plus a sleep that advances it instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeSMSProvider:
    name = "fake-sms"

    def __init__(self, timer: VirtualTime) -> None:
        self.timer = timer
        self.sent: list[dict] = []
        self.failures: dict[str, list[DeliveryError]] = {}

    def fail_next(self, to: str, *errors: DeliveryError) -> None:
        self.failures.setdefault(to, []).extend(errors)

    async def send_sms(self, to: str, body: str) -> ProviderReceipt:
        queued = self.failures.get(to)
        self.sent.append({"to": to, "body": body, "at": self.timer.now, "ok": not queued})
        if queued:
            raise queued.pop(0)
        return ProviderReceipt(provider=self.name, message_id=f"SM{len(self.sent):04d}", status="queued")


class FakeEmailProvider:
    name = "fake-email"

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.failures: dict[str, list[DeliveryError]] = {}

    def fail_next(self, to: str, *errors: DeliveryError) -> None:
        self.failures.setdefault(to, []).extend(errors)

    async def send_email(self, to: str, subject: str, text: str, html: str | None = None) -> ProviderReceipt:
        queued = self.failures.get(to)
        self.sent.append({"to": to, "subject": subject, "text": text, "ok": not queued})
        if queued:
            raise queued.pop(0)
        return ProviderReceipt(provider=self.name, message_id=f"EM{len(self.sent):04d}", status="accepted")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def timer() -> VirtualTime:
    return VirtualTime()


@pytest.fixture()
def sms(timer: VirtualTime) -> FakeSMSProvider:
    return FakeSMSProvider(timer)


@pytest.fixture()
def email() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture()
def settings():
    return get_settings().model_copy(update={"delivery_backoff_seconds": 0.0})


@pytest.fixture()
async def database() -> AsyncIterator[None]:
    from contacthub.core.db import engine
    from contacthub.models import Base

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
        await connection.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture()
def services(database, settings, clock, timer, sms, email):
    from contacthub.core.db import AsyncSessionLocal
    from contacthub.services.registry import build_services

    return build_services(
        settings,
        AsyncSessionLocal,
        sms_provider=sms,
        email_provider=email,
        clock=clock,
        monotonic=timer.monotonic,
        sleep=timer.sleep,
    )


@pytest.fixture()
async def client(services) -> AsyncIterator[AsyncClient]:
    from contacthub.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver", headers=OWNER) as client:
        yield client


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"
