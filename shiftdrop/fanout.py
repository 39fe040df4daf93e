"""
Notification fan-out for posted, reopened and resent shifts.

The fan-out only builds outbox messages; delivery happens later in the
outbox processor.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo

from shiftdrop.engine import issue_notification
from shiftdrop.models import (
    Casual,
    MessageType,
    NotificationPayload,
    OutboxMessage,
    Shift,
    ShiftClaim,
    ShiftNotification,
)

TokenFn = Callable[[], str]


@dataclass
class FanOut:
    created: list[ShiftNotification] = field(default_factory=list)
    messages: list[OutboxMessage] = field(default_factory=list)

    @property
    def notified_count(self) -> int:
        return len(self.messages)


def describe_shift(shift: Shift, tz: tzinfo = UTC) -> str:
    start = shift.starts_at.astimezone(tz)
    end = shift.ends_at.astimezone(tz)
    return (
        f"{start:%a} {start.day} {start:%b}, {start:%I:%M%p}"
        f" - {end:%I:%M%p}"
    )


def claim_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/casual/claim/{token}"


def _body(message_type: MessageType, shift: Shift, tz: tzinfo) -> str:
    when = describe_shift(shift, tz)
    spots = shift.spots_remaining
    if message_type == MessageType.SHIFT_REOPENED:
        return f"Spot opened! {when}. {spots} spot(s) left."
    if message_type == MessageType.SHIFT_REMINDER:
        return f"Reminder: {when}. {spots} spot(s) left!"
    return f"New shift available: {when}. {spots} spot(s) available."


def compute_notify_set(
    shift: Shift,
    casuals: Iterable[Casual],
    *,
    exclude_casual_id: str | None = None,
    tz: tzinfo = UTC,
) -> list[Casual]:
    """
    Active casuals of the shift's pool who are available for it and do not
    already hold a spot. ``exclude_casual_id`` drops the casual who just
    vacated a spot.
    """
    claimed = shift.claimed_casual_ids()
    seen: set[str] = set()
    notify: list[Casual] = []
    for casual in casuals:
        if casual.id in seen:
            continue
        seen.add(casual.id)
        if (
            casual.pool_id == shift.pool_id
            and casual.is_active
            and casual.id not in claimed
            and casual.id != exclude_casual_id
            and casual.is_available_for(shift.starts_at, shift.ends_at, tz)
        ):
            notify.append(casual)
    return notify


def fan_out(
    shift: Shift,
    casuals: Iterable[Casual],
    existing: Iterable[ShiftNotification],
    *,
    message_type: MessageType,
    now: datetime,
    token_fn: TokenFn,
    base_url: str,
    tz: tzinfo = UTC,
    exclude_casual_id: str | None = None,
) -> FanOut:
    # a still-valid pending token is reused so one casual never holds two
    reusable = {
        n.casual_id: n
        for n in existing
        if n.shift_id == shift.id and n.is_valid(now)
    }

    result = FanOut()
    body = _body(message_type, shift, tz)
    for casual in compute_notify_set(
        shift, casuals, exclude_casual_id=exclude_casual_id, tz=tz
    ):
        notification = reusable.get(casual.id)
        if notification is None:
            notification = issue_notification(shift, casual, token_fn(), now)
            result.created.append(notification)

        result.messages.append(
            OutboxMessage(
                message_type=message_type,
                payload=NotificationPayload(
                    recipient_contact=casual.phone_number,
                    body_text=body,
                    action_url=claim_url(base_url, notification.claim_token),
                ),
                created_at=now,
                shift_id=shift.id,
                notification_id=notification.id,
            )
        )
    return result


def claim_confirmation(
    shift: Shift, claim: ShiftClaim, casual: Casual, now: datetime, tz: tzinfo = UTC
) -> OutboxMessage:
    return OutboxMessage(
        message_type=MessageType.CLAIM_CONFIRMATION,
        payload=NotificationPayload(
            recipient_contact=casual.phone_number,
            body_text=f"Confirmed! {describe_shift(shift, tz)}",
        ),
        created_at=now,
        shift_id=claim.shift_id,
    )
