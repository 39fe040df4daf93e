import logging
from collections.abc import Iterator, MutableMapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel

from shiftdrop.models import (
    Casual,
    OutboxMessage,
    OutboxStatus,
    Pool,
    Shift,
    ShiftNotification,
    ShiftStatus,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ConcurrencyConflictError(Exception):
    """A conditioned write found a different version than it read."""

    def __init__(
        self, table: str, record_id: str, expected: int | None, actual: int | None
    ):
        super().__init__(
            f"{table} {record_id}: expected version {expected}, found {actual}"
        )
        self.table = table
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class InMemoryKeyValueDatabase[K, V]:
    """One table: an in-memory key/value map."""

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)


@dataclass
class ChangeSet:
    """
    Everything one request wants to write, committed all-or-nothing.

    Shifts and casuals carry the version they were loaded with; new rows have
    no expected version and must not exist yet. ``deliveries`` are status
    changes to queued messages and only land while the stored message is
    still pending.
    """

    shifts: list[tuple[Shift, int | None]] = field(default_factory=list)
    casuals: list[tuple[Casual, int | None]] = field(default_factory=list)
    notifications: list[ShiftNotification] = field(default_factory=list)
    outbox: list[OutboxMessage] = field(default_factory=list)
    deliveries: list[OutboxMessage] = field(default_factory=list)

    def add_shift(self, shift: Shift) -> None:
        self.shifts.append((shift, None))

    def save_shift(self, shift: Shift) -> None:
        self.shifts.append((shift, shift.version))

    def add_casual(self, casual: Casual) -> None:
        self.casuals.append((casual, None))

    def save_casual(self, casual: Casual) -> None:
        self.casuals.append((casual, casual.version))

    def save_notification(self, notification: ShiftNotification) -> None:
        self.notifications.append(notification)

    def enqueue(self, message: OutboxMessage) -> None:
        self.outbox.append(message)

    def update_message(self, message: OutboxMessage) -> None:
        self.deliveries.append(message)


def _copy(model: M | None) -> M | None:
    return None if model is None else model.model_copy(deep=True)


class Database:
    """
    Container for all tables.

    Reads hand out deep copies so a request's in-flight changes stay private
    until ``commit``. ``commit`` has no await points between checking row
    versions and writing, which makes it atomic for every other coroutine.
    """

    def __init__(self) -> None:
        self.pools: InMemoryKeyValueDatabase[str, Pool] = (
            InMemoryKeyValueDatabase()
        )
        self.casuals: InMemoryKeyValueDatabase[str, Casual] = (
            InMemoryKeyValueDatabase()
        )
        self.shifts: InMemoryKeyValueDatabase[str, Shift] = (
            InMemoryKeyValueDatabase()
        )
        self.notifications: InMemoryKeyValueDatabase[str, ShiftNotification] = (
            InMemoryKeyValueDatabase()
        )
        self.outbox: InMemoryKeyValueDatabase[str, OutboxMessage] = (
            InMemoryKeyValueDatabase()
        )

    # pools

    async def get_pool(self, pool_id: str) -> Pool | None:
        return _copy(self.pools.get(pool_id))

    async def get_authorized_pool(
        self, pool_id: str, principal_id: str
    ) -> Pool | None:
        """
        Return the pool only if ``principal_id`` may manage it. A missing
        pool and a forbidden one look the same to the caller.
        """
        pool = self.pools.get(pool_id)
        if pool is None or not pool.is_managed_by(principal_id):
            return None
        return _copy(pool)

    # casuals

    async def get_casual(self, casual_id: str) -> Casual | None:
        return _copy(self.casuals.get(casual_id))

    async def find_casual_by_phone(
        self, phone_number: str, pool_id: str | None = None
    ) -> Casual | None:
        for casual in self.casuals:
            if casual.is_removed or casual.phone_number != phone_number:
                continue
            if pool_id is None or casual.pool_id == pool_id:
                return _copy(casual)
        return None

    async def find_casual_by_invite_token(self, token: str) -> Casual | None:
        return _copy(
            next((c for c in self.casuals if c.invite_token == token), None)
        )

    async def find_casual_by_opt_out_token(self, token: str) -> Casual | None:
        return _copy(
            next(
                (
                    c
                    for c in self.casuals
                    if c.opt_out_token == token and not c.is_removed
                ),
                None,
            )
        )

    async def list_casuals(self, pool_id: str) -> list[Casual]:
        return [
            _copy(c)
            for c in self.casuals
            if c.pool_id == pool_id and not c.is_removed
        ]

    # shifts

    async def get_shift(self, shift_id: str) -> Shift | None:
        return _copy(self.shifts.get(shift_id))

    async def list_shifts(
        self, pool_id: str, status: ShiftStatus | None = None
    ) -> list[Shift]:
        shifts = [
            _copy(s)
            for s in self.shifts
            if s.pool_id == pool_id and (status is None or s.status == status)
        ]
        return sorted(shifts, key=lambda s: s.starts_at)

    # notifications

    async def find_notification_by_token(
        self, token: str
    ) -> ShiftNotification | None:
        return _copy(
            next((n for n in self.notifications if n.claim_token == token), None)
        )

    async def list_notifications(self, shift_id: str) -> list[ShiftNotification]:
        return [_copy(n) for n in self.notifications if n.shift_id == shift_id]

    # outbox

    async def list_pending_outbox(self, shift_id: str) -> list[OutboxMessage]:
        return [
            _copy(m)
            for m in self.outbox
            if m.shift_id == shift_id and m.status == OutboxStatus.PENDING
        ]

    async def get_outbox_message(self, message_id: str) -> OutboxMessage | None:
        return _copy(self.outbox.get(message_id))

    async def ready_outbox(self, now: datetime, limit: int) -> list[OutboxMessage]:
        ready = [
            m
            for m in self.outbox
            if m.status == OutboxStatus.PENDING
            and (m.next_retry_at is None or m.next_retry_at <= now)
        ]
        ready.sort(key=lambda m: m.created_at)
        return [_copy(m) for m in ready[:limit]]

    # writes

    async def commit(self, changes: ChangeSet) -> None:
        # check every condition before touching anything
        _check_versions("shift", self.shifts, changes.shifts)
        _check_versions("casual", self.casuals, changes.casuals)

        _write_versioned(self.shifts, changes.shifts)
        _write_versioned(self.casuals, changes.casuals)
        for notification in changes.notifications:
            self.notifications.put(notification.id, _copy(notification))
        for message in changes.outbox:
            self.outbox.put(message.id, _copy(message))
        for message in changes.deliveries:
            stored = self.outbox.get(message.id)
            if stored is None or stored.status != OutboxStatus.PENDING:
                logger.info(
                    "outbox message %s is no longer pending, leaving it %s",
                    message.id,
                    None if stored is None else stored.status,
                )
                continue
            self.outbox.put(message.id, _copy(message))


def _check_versions(
    table: str,
    stored_rows: InMemoryKeyValueDatabase[str, Shift | Casual],
    rows: list[tuple[Shift | Casual, int | None]],
) -> None:
    for row, expected in rows:
        stored = stored_rows.get(row.id)
        actual = None if stored is None else stored.version
        if actual != expected:
            logger.info(
                "conflict on %s %s (expected version %s, found %s)",
                table,
                row.id,
                expected,
                actual,
            )
            raise ConcurrencyConflictError(table, row.id, expected, actual)


def _write_versioned(
    stored_rows: InMemoryKeyValueDatabase[str, Shift | Casual],
    rows: list[tuple[Shift | Casual, int | None]],
) -> None:
    for row, expected in rows:
        if expected is not None:
            row.version = expected + 1
        stored_rows.put(row.id, _copy(row))
