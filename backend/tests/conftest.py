"""
Shared fixtures for the monetization test suite.

Every test gets its own SQLite database, a scripted gateway, a notifier that
records instead of sending, and a clock the test can move.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_SECRET_KEY"] = "test-secret-key"

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from monetization.config import settings
from monetization.database import Base, create_engine, create_session_factory
from monetization.gateways.base import (
    BaseGateway,
    TransferFailure,
    TransferNotFound,
    TransferOrder,
    TransferSuccess,
)
from monetization.gateways.registry import GatewayRegistry
from monetization.models import EarningEvent, EarningStatus, User
from monetization.services.context import build_services
from monetization.services.notifications import LogNotifier

WEBHOOK_SECRET = "callback-secret"
DESTINATION = "+2348012345678"


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class Hang:
    """Scripted outcome: never answer, optionally settle ``status`` at the gateway anyway."""

    status: Optional[object] = None
    seconds: float = 10.0


class FakeGateway(BaseGateway):
    name = "fake"
    display_name = "Fake"

    def __init__(self):
        super().__init__()
        self.script: List[object] = []
        self.orders: List[TransferOrder] = []
        self.statuses: Dict[str, object] = {}

    def will(self, *outcomes) -> "FakeGateway":
        self.script.extend(outcomes)
        return self

    async def send_transfer(self, order: TransferOrder):
        self.orders.append(order)
        outcome = self.script.pop(0) if self.script else TransferSuccess(transaction_id=f"TX-{len(self.orders)}")

        if isinstance(outcome, Hang):
            if outcome.status is not None:
                self.statuses[order.reference] = outcome.status
            await asyncio.sleep(outcome.seconds)
            raise AssertionError("hang outlived the dispatch timeout")
        if isinstance(outcome, Exception):
            raise outcome

        self.statuses[order.reference] = outcome
        return outcome

    async def get_transfer_status(self, reference: str):
        return self.statuses.get(reference, TransferNotFound())


class RecordingNotifier(LogNotifier):
    def __init__(self):
        super().__init__()
        self.sent = []

    async def notify(self, notification):
        self.sent.append(notification)

    def types(self) -> List[str]:
        return [n.type for n in self.sent]


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 3, 10, 12, 0, 0))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def test_settings():
    return settings.model_copy(update={
        "GATEWAY_TIMEOUT_SECONDS": 0.2,
        "GATEWAY_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "DESTINATION_ENCRYPTION_KEY": "",
    })


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def services(test_settings, session_factory, gateway, notifier, clock):
    ctx = build_services(
        test_settings,
        session_factory,
        gateways=GatewayRegistry(gateway),
        notifier=notifier,
        clock=clock,
    )
    yield ctx
    await notifier.drain()


@pytest.fixture
def make_user(session_factory, clock):
    async def _make_user(age_days: int = 40, verified: bool = True, **fields) -> User:
        user = User(
            id=uuid.uuid4(),
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            phone_verified=verified,
            email_verified=verified,
            created_at=clock() - timedelta(days=age_days),
            updated_at=clock(),
            **fields,
        )
        async with session_factory() as db:
            db.add(user)
            await db.commit()
        return user

    return _make_user


@pytest.fixture
def fund(services, clock):
    """Credit ``cents`` to a user through ``events`` completed earning events."""

    async def _fund(user_id: uuid.UUID, cents: int, events: int = 10) -> None:
        share, extra = divmod(cents, events)
        async with services.session_factory() as db:
            async with db.begin():
                balance = await services.ledger.lock(db, user_id)
                for i in range(events):
                    amount = share + (extra if i == 0 else 0)
                    db.add(EarningEvent(
                        user_id=user_id,
                        activity="share",
                        amount=amount,
                        quantity=1,
                        status=EarningStatus.COMPLETED.value,
                        created_at=clock(),
                    ))
                services.ledger.credit(balance, cents)

    return _fund


def failure(code: str = "PROVIDER_UNAVAILABLE", message: str = "MTN is down") -> TransferFailure:
    return TransferFailure(code=code, message=message)
