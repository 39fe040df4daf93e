"""
Claim engine: state transitions for shifts, claims and claim tokens.

Every function here works on already-loaded models and the caller's ``now``.
Nothing is persisted: the caller commits the mutated models through the
store, which arbitrates concurrent writers on ``Shift.version``.
"""

from dataclasses import dataclass
from datetime import datetime

from shiftdrop.models import (
    Casual,
    ClaimStatus,
    Pool,
    Shift,
    ShiftClaim,
    ShiftNotification,
    ShiftStatus,
    TokenStatus,
)
from shiftdrop.results import (
    FailureReason,
    NotFound,
    PreconditionFailure,
    Result,
    Success,
    ValidationFailure,
    fail,
)

_TOKEN_FAILURES = {
    TokenStatus.USED: FailureReason.TOKEN_USED,
    TokenStatus.REVOKED: FailureReason.TOKEN_REVOKED,
    TokenStatus.EXPIRED: FailureReason.TOKEN_EXPIRED,
}


@dataclass(frozen=True, slots=True)
class ClaimOutcome:
    shift: Shift
    claim: ShiftClaim


def post_shift(
    pool: Pool,
    starts_at: datetime,
    ends_at: datetime,
    spots_needed: int,
    now: datetime,
) -> Result[Shift]:
    if starts_at <= now:
        return ValidationFailure("Shift must start in the future")
    if ends_at <= starts_at:
        return ValidationFailure("Shift end time must be after start time")
    if spots_needed < 1:
        return ValidationFailure("At least one spot is required")

    return Success(
        Shift(
            pool_id=pool.id,
            starts_at=starts_at,
            ends_at=ends_at,
            spots_needed=spots_needed,
            spots_remaining=spots_needed,
            created_at=now,
        )
    )


def claim_shift(shift: Shift, casual: Casual, now: datetime) -> Result[ClaimOutcome]:
    """
    Reserve one spot on ``shift`` for ``casual``.

    Preconditions are checked in a fixed order so that the reported reason is
    stable: cancelled, filled (status or zero spots), already claimed by this
    casual, casual inactive, shift already started.
    """
    if casual.pool_id != shift.pool_id:
        return NotFound("Shift not found or not in your pool")

    if shift.status == ShiftStatus.CANCELLED:
        return fail(FailureReason.SHIFT_CANCELLED)
    if shift.status == ShiftStatus.FILLED or shift.spots_remaining <= 0:
        return fail(FailureReason.SHIFT_FILLED)
    if shift.active_claim_for(casual.id) is not None:
        return fail(FailureReason.ALREADY_CLAIMED)
    if not casual.is_active:
        return fail(FailureReason.CASUAL_INACTIVE)
    if shift.starts_at <= now:
        return fail(FailureReason.SHIFT_STARTED)

    claim = ShiftClaim(shift_id=shift.id, casual_id=casual.id, claimed_at=now)
    shift.claims.append(claim)
    shift.spots_remaining -= 1
    if shift.spots_remaining == 0:
        shift.status = ShiftStatus.FILLED

    return Success(ClaimOutcome(shift=shift, claim=claim))


def _release(
    shift: Shift, casual_id: str, status: ClaimStatus, now: datetime
) -> Result[ClaimOutcome]:
    claim = shift.active_claim_for(casual_id)
    if claim is None:
        return fail(FailureReason.NO_ACTIVE_CLAIM)
    if shift.status == ShiftStatus.CANCELLED:
        return fail(FailureReason.SHIFT_CANCELLED)

    claim.status = status
    claim.released_at = now
    shift.spots_remaining += 1
    if shift.status == ShiftStatus.FILLED:
        shift.status = ShiftStatus.OPEN

    return Success(ClaimOutcome(shift=shift, claim=claim))


def release_claim(shift: Shift, casual: Casual, now: datetime) -> Result[ClaimOutcome]:
    """The casual gives their spot back ("bail")."""
    return _release(shift, casual.id, ClaimStatus.BAILED, now)


def manager_release(
    shift: Shift, casual: Casual, now: datetime
) -> Result[ClaimOutcome]:
    return _release(shift, casual.id, ClaimStatus.RELEASED_BY_MANAGER, now)


def cancel_shift(
    shift: Shift, notifications: list[ShiftNotification]
) -> Result[list[ShiftNotification]]:
    """
    Cancel the shift and revoke every pending token issued for it.

    Returns the notifications that were revoked so the caller can commit
    them in the same transaction as the shift.
    """
    if shift.status == ShiftStatus.CANCELLED:
        return fail(FailureReason.SHIFT_CANCELLED)

    shift.status = ShiftStatus.CANCELLED
    revoked = [
        n for n in notifications if n.shift_id == shift.id and revoke(n)
    ]
    return Success(revoked)


def issue_notification(
    shift: Shift, casual: Casual, token: str, now: datetime
) -> ShiftNotification:
    return ShiftNotification(
        shift_id=shift.id,
        casual_id=casual.id,
        claim_token=token,
        created_at=now,
    )


def token_failure(
    notification: ShiftNotification, now: datetime
) -> PreconditionFailure | None:
    status = notification.effective_status(now)
    if status == TokenStatus.PENDING:
        return None
    return fail(_TOKEN_FAILURES.get(status, FailureReason.TOKEN_INVALID))


def mark_used(
    notification: ShiftNotification, now: datetime
) -> Result[ShiftNotification]:
    failure = token_failure(notification, now)
    if failure is not None:
        return failure

    notification.token_status = TokenStatus.USED
    notification.used_at = now
    return Success(notification)


def revoke(notification: ShiftNotification) -> bool:
    """Revoke a pending token. Tokens in any other state are left alone."""
    if notification.token_status != TokenStatus.PENDING:
        return False
    notification.token_status = TokenStatus.REVOKED
    return True


def claim_with_token(
    notification: ShiftNotification,
    shift: Shift,
    casual: Casual,
    now: datetime,
) -> Result[ClaimOutcome]:
    failure = token_failure(notification, now)
    if failure is not None:
        return failure
    if notification.shift_id != shift.id or notification.casual_id != casual.id:
        return fail(FailureReason.TOKEN_INVALID)

    if shift.status == ShiftStatus.CANCELLED:
        return fail(FailureReason.SHIFT_CANCELLED)
    if shift.status == ShiftStatus.FILLED:
        return fail(FailureReason.SHIFT_FILLED)

    result = claim_shift(shift, casual, now)
    if not isinstance(result, Success):
        return result

    used = mark_used(notification, now)
    if not isinstance(used, Success):
        return used

    return result
