import itertools
from datetime import UTC, datetime, time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from shiftdrop.api import create_app
from shiftdrop.config import Settings
from shiftdrop.database import Database
from shiftdrop.models import CasualAvailability, Pool, PoolAdmin

from factories import (
    CO_ADMIN_ID,
    MANAGER_ID,
    NOW,
    OTHER_MANAGER_ID,
    make_casual,
    make_shift,
)


class Clock:
    """Settable time source for app.state.now_fn."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def settings() -> Settings:
    return Settings(
        base_url="http://test",
        display_timezone="UTC",
        outbox_enabled=False,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def token_fn():
    counter = itertools.count(1)
    return lambda: f"tok{next(counter):04d}"


@pytest.fixture
def app(settings, clock, token_fn):
    app = create_app(settings)
    app.state.now_fn = clock
    app.state.token_fn = token_fn
    return app


@pytest.fixture
def db(app) -> Database:
    return app.state.database


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest.fixture
def seeded(db: Database) -> Database:
    """
    pool-1 (manager-1, accepted co-admin): alice, bob, carol active;
    dave has a pending invite; erin opted out.
    pool-2 belongs to manager-2 and has frank.
    """
    db.pools.put(
        "pool-1",
        Pool(
            id="pool-1",
            name="Bakery",
            owner_id=MANAGER_ID,
            created_at=NOW,
            admins=[
                PoolAdmin(name="Co Admin", auth_id=CO_ADMIN_ID, accepted_at=NOW),
                PoolAdmin(name="Pending Admin", auth_id="auth0|pending"),
            ],
        ),
    )
    db.pools.put(
        "pool-2",
        Pool(id="pool-2", name="Cafe", owner_id=OTHER_MANAGER_ID, created_at=NOW),
    )

    casuals = [
        make_casual("alice", "Alice", "+61400000001"),
        make_casual("bob", "Bob", "+61400000002"),
        make_casual(
            "carol",
            "Carol",
            "+61400000003",
            # Thursdays only, 07:00-17:00
            availability=[
                CasualAvailability(
                    day_of_week=3, from_time=time(7, 0), to_time=time(17, 0)
                )
            ],
        ),
        make_casual(
            "dave",
            "Dave",
            "+61400000004",
            accepted=False,
            invite_token="invite-dave",
            invite_expires_at=datetime(2025, 7, 2, 0, 0, 0, tzinfo=UTC),
        ),
        make_casual("erin", "Erin", "+61400000005", opted_out_at=NOW),
        make_casual("frank", "Frank", "+61400000006", pool_id="pool-2"),
    ]
    for casual in casuals:
        db.casuals.put(casual.id, casual)

    for shift in (
        make_shift("two-spot", 2),
        make_shift("one-spot", 1),
        make_shift("other-pool", 1, pool_id="pool-2"),
    ):
        db.shifts.put(shift.id, shift)

    return db
