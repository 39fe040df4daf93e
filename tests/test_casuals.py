import itertools
from datetime import time, timedelta

import pytest

from shiftdrop import casuals as roster
from shiftdrop.models import InviteStatus, MessageType, Pool
from shiftdrop.phone import parse_phone_number, redact
from shiftdrop.results import (
    FailureReason,
    PreconditionFailure,
    Success,
    ValidationFailure,
)

from factories import NOW, make_casual

POOL = Pool(id="pool-1", name="Bakery", owner_id="owner", created_at=NOW)


def _tokens():
    counter = itertools.count(1)
    return lambda: f"tok{next(counter)}"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0412 345 678", "+61412345678"),
        ("0412-345-678", "+61412345678"),
        ("61412345678", "+61412345678"),
        ("+61 412 345 678", "+61412345678"),
        ("+1 555 000 1234", "+15550001234"),
    ],
)
def test_phone_numbers_normalise_to_e164(raw: str, expected: str) -> None:
    assert parse_phone_number(raw) == Success(expected)


@pytest.mark.parametrize(
    "raw, message",
    [
        (None, "Phone number is required"),
        ("   ", "Phone number is required"),
        ("123", "Invalid phone number format"),
        ("+1234567890123456", "Invalid phone number format"),
        ("call me", "Invalid phone number format"),
    ],
)
def test_bad_phone_numbers_are_rejected(raw, message: str) -> None:
    result = parse_phone_number(raw)

    assert isinstance(result, ValidationFailure)
    assert result.message == message


def test_redact_keeps_last_four_digits() -> None:
    assert redact("+61412345678") == "***5678"
    assert redact("123") == "****"


def test_invite_creates_pending_casual_with_tokens() -> None:
    result = roster.invite_casual(
        POOL, "  Grace  ", "0412 345 678", [], NOW, _tokens()
    )

    assert isinstance(result, Success)
    casual = result.value
    assert casual.name == "Grace"
    assert casual.phone_number == "+61412345678"
    assert casual.invite_status == InviteStatus.PENDING
    assert casual.invite_token == "tok1"
    assert casual.invite_expires_at == NOW + timedelta(days=1)
    assert casual.opt_out_token == "tok2"
    assert not casual.is_active


def test_invite_rejects_blank_name_and_duplicate_phone() -> None:
    existing = [make_casual("alice", "Alice", "+61412345678")]

    blank = roster.invite_casual(POOL, " ", "0412345678", existing, NOW, _tokens())
    duplicate = roster.invite_casual(
        POOL, "Alice Again", "0412345678", existing, NOW, _tokens()
    )

    assert blank == ValidationFailure("Casual name cannot be empty")
    assert duplicate == ValidationFailure(
        "A casual with this phone number is already in the pool"
    )


def test_removed_casual_phone_can_be_reinvited() -> None:
    existing = [make_casual("old", "Old", "+61412345678", removed_at=NOW)]

    result = roster.invite_casual(
        POOL, "New", "0412345678", existing, NOW, _tokens()
    )

    assert isinstance(result, Success)


def test_verify_invite_activates_casual() -> None:
    casual = make_casual(
        "dave",
        accepted=False,
        invite_token="invite-dave",
        invite_expires_at=NOW + timedelta(days=1),
    )

    result = roster.verify_invite(casual, "invite-dave", NOW + timedelta(hours=2))

    assert isinstance(result, Success)
    assert casual.invite_status == InviteStatus.ACCEPTED
    assert casual.invite_token is None
    assert casual.is_active

    again = roster.verify_invite(casual, "invite-dave", NOW)
    assert again == PreconditionFailure(FailureReason.INVITE_ALREADY_ACCEPTED)


def test_verify_invite_rejects_expired_and_wrong_tokens() -> None:
    casual = make_casual(
        "dave",
        accepted=False,
        invite_token="invite-dave",
        invite_expires_at=NOW + timedelta(days=1),
    )

    wrong = roster.verify_invite(casual, "guess", NOW)
    expired = roster.verify_invite(casual, "invite-dave", NOW + timedelta(days=2))

    assert isinstance(wrong, ValidationFailure)
    assert expired == PreconditionFailure(FailureReason.INVITE_EXPIRED)
    assert expired.message == "Invite has expired"
    assert casual.invite_status == InviteStatus.PENDING


def test_regenerate_invite_replaces_token_and_expiry() -> None:
    casual = make_casual(
        "dave",
        accepted=False,
        invite_token="old",
        invite_expires_at=NOW,
    )
    later = NOW + timedelta(days=3)

    result = roster.regenerate_invite(casual, later, _tokens())

    assert isinstance(result, Success)
    assert casual.invite_token == "tok1"
    assert casual.invite_expires_at == later + timedelta(days=1)
    assert roster.regenerate_invite(make_casual("alice"), NOW, _tokens()) == (
        PreconditionFailure(FailureReason.INVITE_ALREADY_ACCEPTED)
    )


def test_opt_out_deactivates_casual_once() -> None:
    casual = make_casual("alice")

    result = roster.opt_out(casual, "opt-out-alice", NOW)

    assert isinstance(result, Success)
    assert casual.opted_out_at == NOW
    assert not casual.is_active
    assert roster.opt_out(casual, "opt-out-alice", NOW) == PreconditionFailure(
        FailureReason.ALREADY_OPTED_OUT
    )


def test_opt_out_with_wrong_token_fails() -> None:
    casual = make_casual("alice")

    assert isinstance(roster.opt_out(casual, "nope", NOW), ValidationFailure)
    assert casual.opted_out_at is None


def test_remove_keeps_first_removal_time() -> None:
    casual = make_casual("alice")

    roster.remove_casual(casual, NOW)
    roster.remove_casual(casual, NOW + timedelta(days=1))

    assert casual.removed_at == NOW
    assert casual.is_removed
    assert not casual.is_active


def test_set_availability_replaces_windows() -> None:
    casual = make_casual("alice")

    result = roster.set_availability(
        casual, [(0, time(9), time(17)), (4, time(22), time(6))]
    )

    assert isinstance(result, Success)
    assert [a.day_of_week for a in casual.availability] == [0, 4]
    assert casual.availability[1].is_overnight

    cleared = roster.set_availability(casual, [])
    assert isinstance(cleared, Success)
    assert casual.availability == []


@pytest.mark.parametrize(
    "slot, message",
    [
        ((7, time(9), time(17)), "Invalid day of week: 7"),
        ((-1, time(9), time(17)), "Invalid day of week: -1"),
        ((2, time(9), time(9)), "From time and to time cannot be the same"),
    ],
)
def test_set_availability_rejects_bad_slots(slot, message: str) -> None:
    casual = make_casual("alice", availability=[])

    result = roster.set_availability(casual, [slot])

    assert result == ValidationFailure(message)
    assert casual.availability == []


def test_invite_message_links_to_verification() -> None:
    casual = make_casual("dave", "Dave", accepted=False, invite_token="abc")

    message = roster.invite_message(casual, POOL, "http://test/", NOW)

    assert message.message_type == MessageType.CASUAL_INVITE
    assert message.payload.action_url == "http://test/casual/verify/abc"
    assert message.payload.body_text == (
        "Hi Dave! You've been invited to join Bakery."
    )
