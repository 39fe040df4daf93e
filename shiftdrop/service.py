"""
Use cases behind the HTTP routes.

Each operation is one unit of work: load a private snapshot, run the engine,
commit every change at once. A lost race on a shift's version becomes a
``Conflict`` result; it is never retried here.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, time

from shiftdrop import casuals as roster
from shiftdrop import engine
from shiftdrop.config import Settings
from shiftdrop.database import ChangeSet, ConcurrencyConflictError, Database
from shiftdrop.fanout import FanOut, claim_confirmation, fan_out
from shiftdrop.models import (
    Casual,
    MessageType,
    Pool,
    Shift,
    ShiftClaim,
    ShiftNotification,
    ShiftStatus,
)
from shiftdrop.outbox import cancel_message
from shiftdrop.phone import parse_phone_number, redact
from shiftdrop.results import (
    CASUAL_CONFLICT_MESSAGE,
    Conflict,
    FailureReason,
    NotFound,
    Result,
    Success,
    fail,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
TokenFn = Callable[[], str]

POOL_NOT_FOUND = NotFound("Pool not found")
SHIFT_NOT_FOUND = NotFound("Shift not found")
CASUAL_NOT_FOUND = NotFound("Casual not found")
CASUAL_PHONE_NOT_FOUND = NotFound("Casual not found with this phone number")


@dataclass(frozen=True, slots=True)
class ClaimReceipt:
    shift: Shift
    claim: ShiftClaim
    casual: Casual


@dataclass(frozen=True, slots=True)
class ReleaseReceipt:
    shift: Shift
    claim: ShiftClaim
    notified_count: int


@dataclass(frozen=True, slots=True)
class FanOutReport:
    shift: Shift
    notified_count: int


@dataclass(frozen=True, slots=True)
class OpenShifts:
    casual: Casual
    shifts: list[Shift]


def _stage(changes: ChangeSet, fanned: FanOut) -> None:
    for notification in fanned.created:
        changes.save_notification(notification)
    for message in fanned.messages:
        changes.enqueue(message)


class ShiftService:
    def __init__(
        self,
        db: Database,
        settings: Settings,
        *,
        now_fn: NowFn,
        token_fn: TokenFn,
    ) -> None:
        self.db = db
        self.settings = settings
        self.now_fn = now_fn
        self.token_fn = token_fn

    async def _commit(self, changes: ChangeSet) -> Conflict | None:
        try:
            await self.db.commit(changes)
        except ConcurrencyConflictError as exc:
            logger.info("lost race on %s %s", exc.table, exc.record_id)
            if exc.table == "casual":
                return Conflict(CASUAL_CONFLICT_MESSAGE)
            return Conflict()
        return None

    async def _save_casual(self, casual: Casual) -> Conflict | None:
        changes = ChangeSet()
        changes.save_casual(casual)
        return await self._commit(changes)

    def _fan_out(
        self,
        shift: Shift,
        casuals: Iterable[Casual],
        existing: Iterable[ShiftNotification],
        message_type: MessageType,
        now: datetime,
        exclude_casual_id: str | None = None,
    ) -> FanOut:
        return fan_out(
            shift,
            casuals,
            existing,
            message_type=message_type,
            now=now,
            token_fn=self.token_fn,
            base_url=self.settings.base_url,
            tz=self.settings.tz,
            exclude_casual_id=exclude_casual_id,
        )

    async def _pool_shift(
        self, principal_id: str, pool_id: str, shift_id: str
    ) -> tuple[Pool, Shift] | NotFound:
        pool = await self.db.get_authorized_pool(pool_id, principal_id)
        if pool is None:
            return POOL_NOT_FOUND
        shift = await self.db.get_shift(shift_id)
        if shift is None or shift.pool_id != pool.id:
            return SHIFT_NOT_FOUND
        return pool, shift

    async def _pool_casual(
        self, principal_id: str, pool_id: str, casual_id: str
    ) -> tuple[Pool, Casual] | NotFound:
        pool = await self.db.get_authorized_pool(pool_id, principal_id)
        if pool is None:
            return POOL_NOT_FOUND
        casual = await self.db.get_casual(casual_id)
        if casual is None or casual.pool_id != pool.id or casual.is_removed:
            return CASUAL_NOT_FOUND
        return pool, casual

    # manager actions

    async def post_shift(
        self,
        principal_id: str,
        pool_id: str,
        starts_at: datetime,
        ends_at: datetime,
        spots_needed: int,
    ) -> Result[FanOutReport]:
        pool = await self.db.get_authorized_pool(pool_id, principal_id)
        if pool is None:
            return POOL_NOT_FOUND

        now = self.now_fn()
        posted = engine.post_shift(pool, starts_at, ends_at, spots_needed, now)
        if not isinstance(posted, Success):
            return posted
        shift = posted.value

        casuals = await self.db.list_casuals(pool.id)
        fanned = self._fan_out(shift, casuals, [], MessageType.SHIFT_BROADCAST, now)

        changes = ChangeSet()
        changes.add_shift(shift)
        _stage(changes, fanned)
        if conflict := await self._commit(changes):
            return conflict

        logger.info(
            "posted shift %s in pool %s, notified %d casuals",
            shift.id,
            pool.id,
            fanned.notified_count,
        )
        return Success(FanOutReport(shift, fanned.notified_count))

    async def list_shifts(
        self, principal_id: str, pool_id: str
    ) -> Result[list[Shift]]:
        pool = await self.db.get_authorized_pool(pool_id, principal_id)
        if pool is None:
            return POOL_NOT_FOUND
        return Success(await self.db.list_shifts(pool.id))

    async def cancel_shift(
        self, principal_id: str, pool_id: str, shift_id: str
    ) -> Result[Shift]:
        found = await self._pool_shift(principal_id, pool_id, shift_id)
        if isinstance(found, NotFound):
            return found
        _, shift = found

        notifications = await self.db.list_notifications(shift.id)
        cancelled = engine.cancel_shift(shift, notifications)
        if not isinstance(cancelled, Success):
            return cancelled

        revoked_ids = {n.id for n in cancelled.value}
        changes = ChangeSet()
        changes.save_shift(shift)
        for notification in cancelled.value:
            changes.save_notification(notification)
        for message in await self.db.list_pending_outbox(shift.id):
            if message.notification_id in revoked_ids and cancel_message(message):
                changes.update_message(message)

        if conflict := await self._commit(changes):
            return conflict

        logger.info(
            "cancelled shift %s, revoked %d tokens", shift.id, len(revoked_ids)
        )
        return Success(shift)

    async def release_casual(
        self, principal_id: str, pool_id: str, shift_id: str, casual_id: str
    ) -> Result[ReleaseReceipt]:
        found = await self._pool_shift(principal_id, pool_id, shift_id)
        if isinstance(found, NotFound):
            return found
        pool, shift = found

        # removed casuals can still be released from shifts they hold
        casual = await self.db.get_casual(casual_id)
        if casual is None or casual.pool_id != pool.id:
            return CASUAL_NOT_FOUND

        now = self.now_fn()
        released = engine.manager_release(shift, casual, now)
        if not isinstance(released, Success):
            return released

        return await self._commit_release(shift, released.value.claim, casual, now)

    async def resend_notifications(
        self, principal_id: str, pool_id: str, shift_id: str
    ) -> Result[FanOutReport]:
        found = await self._pool_shift(principal_id, pool_id, shift_id)
        if isinstance(found, NotFound):
            return found
        pool, shift = found

        if shift.status == ShiftStatus.CANCELLED:
            return fail(FailureReason.SHIFT_CANCELLED)
        if shift.status == ShiftStatus.FILLED:
            return fail(FailureReason.SHIFT_FILLED)

        now = self.now_fn()
        casuals = await self.db.list_casuals(pool.id)
        existing = await self.db.list_notifications(shift.id)
        fanned = self._fan_out(
            shift, casuals, existing, MessageType.SHIFT_REMINDER, now
        )

        changes = ChangeSet()
        # the version bump serialises resends against cancels and each other
        changes.save_shift(shift)
        _stage(changes, fanned)
        if conflict := await self._commit(changes):
            return conflict
        return Success(FanOutReport(shift, fanned.notified_count))

    async def invite_casual(
        self, principal_id: str, pool_id: str, name: str, phone_number: str
    ) -> Result[Casual]:
        pool = await self.db.get_authorized_pool(pool_id, principal_id)
        if pool is None:
            return POOL_NOT_FOUND

        now = self.now_fn()
        existing = await self.db.list_casuals(pool.id)
        invited = roster.invite_casual(
            pool, name, phone_number, existing, now, self.token_fn
        )
        if not isinstance(invited, Success):
            return invited
        casual = invited.value

        changes = ChangeSet()
        changes.add_casual(casual)
        changes.enqueue(
            roster.invite_message(casual, pool, self.settings.base_url, now)
        )
        if conflict := await self._commit(changes):
            return conflict
        logger.info("invited casual %s to pool %s", casual.id, pool.id)
        return invited

    async def resend_invite(
        self, principal_id: str, pool_id: str, casual_id: str
    ) -> Result[Casual]:
        found = await self._pool_casual(principal_id, pool_id, casual_id)
        if isinstance(found, NotFound):
            return found
        pool, casual = found

        now = self.now_fn()
        regenerated = roster.regenerate_invite(casual, now, self.token_fn)
        if not isinstance(regenerated, Success):
            return regenerated

        changes = ChangeSet()
        changes.save_casual(casual)
        changes.enqueue(
            roster.invite_message(casual, pool, self.settings.base_url, now)
        )
        if conflict := await self._commit(changes):
            return conflict
        return regenerated

    async def remove_casual(
        self, principal_id: str, pool_id: str, casual_id: str
    ) -> Result[Casual]:
        found = await self._pool_casual(principal_id, pool_id, casual_id)
        if isinstance(found, NotFound):
            return found
        _, casual = found

        roster.remove_casual(casual, self.now_fn())
        if conflict := await self._save_casual(casual):
            return conflict
        logger.info("removed casual %s", casual.id)
        return Success(casual)

    async def set_availability(
        self,
        principal_id: str,
        pool_id: str,
        casual_id: str,
        slots: Iterable[tuple[int, time, time]],
    ) -> Result[Casual]:
        found = await self._pool_casual(principal_id, pool_id, casual_id)
        if isinstance(found, NotFound):
            return found
        _, casual = found

        updated = roster.set_availability(casual, slots)
        if not isinstance(updated, Success):
            return updated

        if conflict := await self._save_casual(casual):
            return conflict
        return updated

    # casual actions

    async def _casual_for_shift(
        self, shift_id: str, phone_number: str
    ) -> tuple[Shift, Casual] | Result[ClaimReceipt]:
        phone = parse_phone_number(phone_number)
        if not isinstance(phone, Success):
            return phone

        shift = await self.db.get_shift(shift_id)
        if shift is None:
            return NotFound("Shift not found or not in your pool")
        casual = await self.db.find_casual_by_phone(phone.value, shift.pool_id)
        if casual is None:
            return CASUAL_PHONE_NOT_FOUND
        return shift, casual

    async def claim_shift(
        self, shift_id: str, phone_number: str
    ) -> Result[ClaimReceipt]:
        found = await self._casual_for_shift(shift_id, phone_number)
        if not isinstance(found, tuple):
            return found
        shift, casual = found

        now = self.now_fn()
        claimed = engine.claim_shift(shift, casual, now)
        if not isinstance(claimed, Success):
            return claimed
        claim = claimed.value.claim

        changes = ChangeSet()
        changes.save_shift(shift)
        changes.enqueue(
            claim_confirmation(shift, claim, casual, now, self.settings.tz)
        )
        if conflict := await self._commit(changes):
            return conflict

        logger.info(
            "casual %s claimed shift %s (%d spots left)",
            casual.id,
            shift.id,
            shift.spots_remaining,
        )
        return Success(ClaimReceipt(shift, claim, casual))

    async def release_shift(
        self, shift_id: str, phone_number: str
    ) -> Result[ReleaseReceipt]:
        found = await self._casual_for_shift(shift_id, phone_number)
        if not isinstance(found, tuple):
            return found
        shift, casual = found

        now = self.now_fn()
        released = engine.release_claim(shift, casual, now)
        if not isinstance(released, Success):
            return released

        return await self._commit_release(shift, released.value.claim, casual, now)

    async def _commit_release(
        self, shift: Shift, claim: ShiftClaim, casual: Casual, now: datetime
    ) -> Result[ReleaseReceipt]:
        casuals = await self.db.list_casuals(shift.pool_id)
        existing = await self.db.list_notifications(shift.id)
        fanned = self._fan_out(
            shift,
            casuals,
            existing,
            MessageType.SHIFT_REOPENED,
            now,
            exclude_casual_id=casual.id,
        )

        changes = ChangeSet()
        changes.save_shift(shift)
        _stage(changes, fanned)
        if conflict := await self._commit(changes):
            return conflict

        logger.info(
            "claim %s on shift %s released (%s), notified %d casuals",
            claim.id,
            shift.id,
            claim.status,
            fanned.notified_count,
        )
        return Success(ReleaseReceipt(shift, claim, fanned.notified_count))

    async def claim_by_token(self, token: str) -> Result[ClaimReceipt]:
        notification = await self.db.find_notification_by_token(token)
        if notification is None:
            return NotFound("Invalid claim token")

        now = self.now_fn()
        if failure := engine.token_failure(notification, now):
            return failure

        shift = await self.db.get_shift(notification.shift_id)
        casual = await self.db.get_casual(notification.casual_id)
        if shift is None or casual is None:
            return NotFound("Invalid claim token")

        claimed = engine.claim_with_token(notification, shift, casual, now)
        if not isinstance(claimed, Success):
            return claimed
        claim = claimed.value.claim

        changes = ChangeSet()
        changes.save_shift(shift)
        changes.save_notification(notification)
        changes.enqueue(
            claim_confirmation(shift, claim, casual, now, self.settings.tz)
        )
        if conflict := await self._commit(changes):
            return conflict

        logger.info("casual %s claimed shift %s by link", casual.id, shift.id)
        return Success(ClaimReceipt(shift, claim, casual))

    async def open_shifts(self, phone_number: str) -> Result[OpenShifts]:
        phone = parse_phone_number(phone_number)
        if not isinstance(phone, Success):
            return phone

        casual = await self.db.find_casual_by_phone(phone.value)
        if casual is None:
            return CASUAL_PHONE_NOT_FOUND

        shifts = await self.db.list_shifts(casual.pool_id, ShiftStatus.OPEN)
        return Success(OpenShifts(casual, shifts))

    async def verify_invite(self, token: str) -> Result[tuple[Casual, Pool]]:
        casual = await self.db.find_casual_by_invite_token(token)
        if casual is None:
            return NotFound("Invalid or expired invite token")
        pool = await self.db.get_pool(casual.pool_id)
        if pool is None:
            return NotFound("Invalid or expired invite token")

        verified = roster.verify_invite(casual, token, self.now_fn())
        if not isinstance(verified, Success):
            return verified

        if conflict := await self._save_casual(casual):
            return conflict
        logger.info("casual %s verified %s", casual.id, redact(casual.phone_number))
        return Success((casual, pool))

    async def opt_out(self, token: str) -> Result[Casual]:
        casual = await self.db.find_casual_by_opt_out_token(token)
        if casual is None:
            return NotFound("Invalid opt-out token")

        opted_out = roster.opt_out(casual, token, self.now_fn())
        if not isinstance(opted_out, Success):
            return opted_out

        if conflict := await self._save_casual(casual):
            return conflict
        logger.info("casual %s opted out", casual.id)
        return opted_out
