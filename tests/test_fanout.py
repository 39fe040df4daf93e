import itertools
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from shiftdrop import engine
from shiftdrop.fanout import (
    claim_confirmation,
    claim_url,
    compute_notify_set,
    describe_shift,
    fan_out,
)
from shiftdrop.models import (
    CasualAvailability,
    MessageType,
    TokenStatus,
)

from factories import NOW, make_casual, make_shift

SYDNEY = ZoneInfo("Australia/Sydney")


def _roster():
    return [
        make_casual("alice", "Alice", "+61400000001"),
        make_casual("bob", "Bob", "+61400000002"),
        make_casual(
            "carol",
            "Carol",
            "+61400000003",
            availability=[
                CasualAvailability(
                    day_of_week=3, from_time=time(7, 0), to_time=time(17, 0)
                )
            ],
        ),
        make_casual("dave", "Dave", "+61400000004", accepted=False),
        make_casual("erin", "Erin", "+61400000005", opted_out_at=NOW),
        make_casual("gone", "Gone", "+61400000007", removed_at=NOW),
        make_casual("frank", "Frank", "+61400000006", pool_id="pool-2"),
    ]


def _ids(casuals) -> list[str]:
    return [c.id for c in casuals]


def _recipients(result) -> list[str]:
    return [m.payload.recipient_contact for m in result.messages]


def _tokens():
    counter = itertools.count(1)
    return lambda: f"tok{next(counter)}"


def test_notify_set_is_active_available_casuals_of_the_pool() -> None:
    shift = make_shift("s1", 2)

    assert _ids(compute_notify_set(shift, _roster())) == ["alice", "bob", "carol"]


def test_notify_set_skips_casuals_outside_their_availability() -> None:
    friday = make_shift(
        "s1",
        1,
        starts_at=datetime(2025, 7, 4, 8, 0, tzinfo=UTC),
        ends_at=datetime(2025, 7, 4, 16, 0, tzinfo=UTC),
    )
    late_thursday = make_shift(
        "s2",
        1,
        starts_at=datetime(2025, 7, 3, 12, 0, tzinfo=UTC),
        ends_at=datetime(2025, 7, 3, 18, 0, tzinfo=UTC),
    )

    assert "carol" not in _ids(compute_notify_set(friday, _roster()))
    # ends after the window closes
    assert "carol" not in _ids(compute_notify_set(late_thursday, _roster()))


def test_notify_set_excludes_claimed_and_vacating_casuals() -> None:
    shift = make_shift("s1", 3)
    engine.claim_shift(shift, make_casual("alice"), NOW)

    notify = compute_notify_set(shift, _roster(), exclude_casual_id="bob")

    assert _ids(notify) == ["carol"]


def test_notify_set_has_no_duplicates() -> None:
    roster = _roster()

    notify = compute_notify_set(make_shift("s1", 1), roster + roster[:2])

    assert _ids(notify) == ["alice", "bob", "carol"]


def test_availability_uses_local_weekday() -> None:
    # 22:00 UTC Wednesday is 08:00 Thursday in Sydney
    shift = make_shift(
        "s1",
        1,
        starts_at=datetime(2025, 7, 2, 22, 0, tzinfo=UTC),
        ends_at=datetime(2025, 7, 3, 6, 0, tzinfo=UTC),
    )
    carol = _roster()[2]

    assert carol.is_available_for(shift.starts_at, shift.ends_at, SYDNEY)
    assert not carol.is_available_for(shift.starts_at, shift.ends_at, UTC)


def test_overnight_availability_window() -> None:
    night_owl = make_casual(
        "owl",
        availability=[
            CasualAvailability(
                day_of_week=3, from_time=time(22, 0), to_time=time(6, 0)
            )
        ],
    )
    overnight = (
        datetime(2025, 7, 3, 23, 0, tzinfo=UTC),
        datetime(2025, 7, 4, 5, 0, tzinfo=UTC),
    )
    evening = (
        datetime(2025, 7, 3, 20, 0, tzinfo=UTC),
        datetime(2025, 7, 3, 23, 0, tzinfo=UTC),
    )

    assert night_owl.availability[0].is_overnight
    assert night_owl.is_available_for(*overnight)
    assert not night_owl.is_available_for(*evening)


def test_no_availability_means_always_available() -> None:
    anyone = make_casual("anyone")

    assert anyone.is_available_for(
        datetime(2025, 7, 6, 3, 0, tzinfo=UTC),
        datetime(2025, 7, 6, 4, 0, tzinfo=UTC),
    )


def test_fan_out_issues_one_token_and_message_per_casual() -> None:
    shift = make_shift("s1", 2)

    result = fan_out(
        shift,
        _roster(),
        [],
        message_type=MessageType.SHIFT_BROADCAST,
        now=NOW,
        token_fn=_tokens(),
        base_url="http://test/",
    )

    assert result.notified_count == 3
    assert [n.claim_token for n in result.created] == ["tok1", "tok2", "tok3"]
    first = result.messages[0]
    assert first.payload.recipient_contact == "+61400000001"
    assert first.payload.action_url == "http://test/casual/claim/tok1"
    assert first.payload.body_text == (
        "New shift available: Thu 3 Jul, 08:00AM - 04:00PM. 2 spot(s) available."
    )
    assert first.shift_id == "s1"
    assert first.notification_id == result.created[0].id


def test_fan_out_reuses_pending_tokens() -> None:
    shift = make_shift("s1", 2)
    roster = _roster()
    alice_token = engine.issue_notification(shift, roster[0], "old-alice", NOW)
    expired_bob = engine.issue_notification(
        shift, roster[1], "old-bob", NOW - timedelta(days=8)
    )
    revoked_carol = engine.issue_notification(shift, roster[2], "old-carol", NOW)
    engine.revoke(revoked_carol)

    result = fan_out(
        shift,
        roster,
        [alice_token, expired_bob, revoked_carol],
        message_type=MessageType.SHIFT_REMINDER,
        now=NOW,
        token_fn=_tokens(),
        base_url="http://test",
    )

    assert [n.casual_id for n in result.created] == ["bob", "carol"]
    assert result.messages[0].payload.action_url == "http://test/casual/claim/old-alice"
    assert result.messages[0].payload.body_text.startswith("Reminder: ")
    assert alice_token.token_status == TokenStatus.PENDING


def test_repeated_fan_out_issues_no_new_tokens() -> None:
    shift = make_shift("s1", 1)
    first = fan_out(
        shift,
        _roster(),
        [],
        message_type=MessageType.SHIFT_BROADCAST,
        now=NOW,
        token_fn=_tokens(),
        base_url="http://test",
    )

    second = fan_out(
        shift,
        _roster(),
        first.created,
        message_type=MessageType.SHIFT_REMINDER,
        now=NOW + timedelta(hours=1),
        token_fn=_tokens(),
        base_url="http://test",
    )

    assert second.created == []
    assert {m.notification_id for m in second.messages} == {
        n.id for n in first.created
    }


def test_reopened_message_reports_spots_left() -> None:
    shift = make_shift("s1", 1)
    alice = make_casual("alice")
    engine.claim_shift(shift, alice, NOW)
    engine.release_claim(shift, alice, NOW)

    result = fan_out(
        shift,
        _roster(),
        [],
        message_type=MessageType.SHIFT_REOPENED,
        now=NOW,
        token_fn=_tokens(),
        base_url="http://test",
        exclude_casual_id="alice",
    )

    assert _recipients(result) == ["+61400000002", "+61400000003"]
    assert result.messages[0].payload.body_text == (
        "Spot opened! Thu 3 Jul, 08:00AM - 04:00PM. 1 spot(s) left."
    )


def test_describe_shift_in_display_timezone() -> None:
    shift = make_shift("s1", 1)

    assert describe_shift(shift, SYDNEY) == "Thu 3 Jul, 06:00PM - 02:00AM"


def test_claim_confirmation_has_no_link() -> None:
    shift = make_shift("s1", 1)
    alice = make_casual("alice", "Alice", "+61400000001")
    claim = engine.claim_shift(shift, alice, NOW).value.claim

    message = claim_confirmation(shift, claim, alice, NOW)

    assert message.message_type == MessageType.CLAIM_CONFIRMATION
    assert message.payload.body_text == "Confirmed! Thu 3 Jul, 08:00AM - 04:00PM"
    assert message.payload.action_url is None
    assert claim_url("http://x/", "abc") == "http://x/casual/claim/abc"