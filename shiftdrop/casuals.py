"""
Casual roster lifecycle: invite, verify, resend, opt-out, removal and
availability.
"""

from collections.abc import Callable, Iterable
from datetime import datetime, time

from shiftdrop.models import (
    INVITE_VALIDITY,
    Casual,
    CasualAvailability,
    InviteStatus,
    MessageType,
    NotificationPayload,
    OutboxMessage,
    Pool,
)
from shiftdrop.phone import parse_phone_number
from shiftdrop.results import (
    FailureReason,
    Result,
    Success,
    ValidationFailure,
    fail,
)

TokenFn = Callable[[], str]


def invite_casual(
    pool: Pool,
    name: str,
    phone_number: str,
    roster: Iterable[Casual],
    now: datetime,
    token_fn: TokenFn,
) -> Result[Casual]:
    if not name or not name.strip():
        return ValidationFailure("Casual name cannot be empty")

    phone = parse_phone_number(phone_number)
    if not isinstance(phone, Success):
        return phone

    if any(c.phone_number == phone.value and not c.is_removed for c in roster):
        return ValidationFailure("A casual with this phone number is already in the pool")

    return Success(
        Casual(
            pool_id=pool.id,
            name=name.strip(),
            phone_number=phone.value,
            invited_at=now,
            invite_token=token_fn(),
            invite_expires_at=now + INVITE_VALIDITY,
            opt_out_token=token_fn(),
        )
    )


def verify_invite(casual: Casual, token: str, now: datetime) -> Result[Casual]:
    if casual.invite_status == InviteStatus.ACCEPTED:
        return fail(FailureReason.INVITE_ALREADY_ACCEPTED)
    if casual.invite_token != token:
        return ValidationFailure("Invalid invite token")
    if casual.invite_expires_at is not None and now > casual.invite_expires_at:
        return fail(FailureReason.INVITE_EXPIRED)

    casual.invite_status = InviteStatus.ACCEPTED
    casual.invite_token = None
    casual.invite_expires_at = None
    return Success(casual)


def regenerate_invite(
    casual: Casual, now: datetime, token_fn: TokenFn
) -> Result[Casual]:
    if casual.invite_status == InviteStatus.ACCEPTED:
        return fail(FailureReason.INVITE_ALREADY_ACCEPTED)

    casual.invite_token = token_fn()
    casual.invite_expires_at = now + INVITE_VALIDITY
    return Success(casual)


def opt_out(casual: Casual, token: str, now: datetime) -> Result[Casual]:
    if casual.opted_out_at is not None:
        return fail(FailureReason.ALREADY_OPTED_OUT)
    if casual.opt_out_token != token:
        return ValidationFailure("Invalid opt-out token")

    casual.opted_out_at = now
    casual.opt_out_token = None
    return Success(casual)


def remove_casual(casual: Casual, now: datetime) -> Casual:
    # soft delete; the first removal time wins
    if casual.removed_at is None:
        casual.removed_at = now
    return casual


def set_availability(
    casual: Casual, slots: Iterable[tuple[int, time, time]]
) -> Result[Casual]:
    windows: list[CasualAvailability] = []
    for day_of_week, from_time, to_time in slots:
        if not 0 <= day_of_week <= 6:
            return ValidationFailure(f"Invalid day of week: {day_of_week}")
        if from_time == to_time:
            return ValidationFailure("From time and to time cannot be the same")
        windows.append(
            CasualAvailability(
                day_of_week=day_of_week, from_time=from_time, to_time=to_time
            )
        )

    casual.availability = windows
    return Success(casual)


def invite_message(
    casual: Casual, pool: Pool, base_url: str, now: datetime
) -> OutboxMessage:
    return OutboxMessage(
        message_type=MessageType.CASUAL_INVITE,
        payload=NotificationPayload(
            recipient_contact=casual.phone_number,
            body_text=(
                f"Hi {casual.name}! You've been invited to join {pool.name}."
            ),
            action_url=f"{base_url.rstrip('/')}/casual/verify/{casual.invite_token}",
        ),
        created_at=now,
    )
