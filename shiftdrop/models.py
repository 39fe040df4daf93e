"""
Domain models for pools, casuals, shifts, claims and claim tokens.
"""

import uuid
from datetime import UTC, datetime, time, timedelta, tzinfo
from enum import StrEnum

from pydantic import BaseModel, Field

# A claim link stays usable for this long after it was issued.
CLAIM_TOKEN_VALIDITY = timedelta(days=7)
INVITE_VALIDITY = timedelta(days=1)


def new_id() -> str:
    return uuid.uuid4().hex


class InviteStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"


class ShiftStatus(StrEnum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"


class ClaimStatus(StrEnum):
    CLAIMED = "claimed"
    BAILED = "bailed"  # released by the casual
    RELEASED_BY_MANAGER = "released_by_manager"


class TokenStatus(StrEnum):
    PENDING = "pending"
    USED = "used"
    REVOKED = "revoked"
    EXPIRED = "expired"  # computed, never stored


class OutboxStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageType(StrEnum):
    SHIFT_BROADCAST = "shift_broadcast"
    SHIFT_REOPENED = "shift_reopened"
    SHIFT_REMINDER = "shift_reminder"
    CLAIM_CONFIRMATION = "claim_confirmation"
    CASUAL_INVITE = "casual_invite"


class PoolAdmin(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    auth_id: str | None = None  # linked once the invite is accepted
    accepted_at: datetime | None = None


class Pool(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    owner_id: str
    created_at: datetime
    admins: list[PoolAdmin] = Field(default_factory=list)

    def is_managed_by(self, principal_id: str) -> bool:
        if self.owner_id == principal_id:
            return True
        return any(
            a.accepted_at is not None and a.auth_id == principal_id
            for a in self.admins
        )


class CasualAvailability(BaseModel):
    day_of_week: int = Field(ge=0, le=6)  # 0 = Monday
    from_time: time
    to_time: time

    @property
    def is_overnight(self) -> bool:
        return self.from_time > self.to_time

    def contains(self, t: time) -> bool:
        if self.is_overnight:
            # e.g. 22:00-06:00 covers 23:00 and 02:00
            return t >= self.from_time or t <= self.to_time
        return self.from_time <= t <= self.to_time


class Casual(BaseModel):
    id: str = Field(default_factory=new_id)
    pool_id: str
    name: str
    phone_number: str  # E.164
    invite_status: InviteStatus = InviteStatus.PENDING
    invited_at: datetime
    invite_token: str | None = None
    invite_expires_at: datetime | None = None
    opt_out_token: str | None = None
    opted_out_at: datetime | None = None
    removed_at: datetime | None = None
    availability: list[CasualAvailability] = Field(default_factory=list)
    version: int = 0

    @property
    def is_removed(self) -> bool:
        return self.removed_at is not None

    @property
    def is_active(self) -> bool:
        return (
            self.invite_status == InviteStatus.ACCEPTED
            and self.opted_out_at is None
            and self.removed_at is None
        )

    def is_available_for(
        self, starts_at: datetime, ends_at: datetime, tz: tzinfo = UTC
    ) -> bool:
        """
        True when no availability is recorded (available any time), or when
        both the start and the end of the shift fall inside the window for
        the shift's start day.
        """
        if not self.availability:
            return True

        local_start = starts_at.astimezone(tz)
        local_end = ends_at.astimezone(tz)
        window = next(
            (
                a
                for a in self.availability
                if a.day_of_week == local_start.weekday()
            ),
            None,
        )
        if window is None:
            return False

        return window.contains(local_start.time()) and window.contains(
            local_end.time()
        )


class ShiftClaim(BaseModel):
    id: str = Field(default_factory=new_id)
    shift_id: str
    casual_id: str
    status: ClaimStatus = ClaimStatus.CLAIMED
    claimed_at: datetime
    released_at: datetime | None = None


class Shift(BaseModel):
    id: str = Field(default_factory=new_id)
    pool_id: str
    starts_at: datetime
    ends_at: datetime
    spots_needed: int
    spots_remaining: int
    status: ShiftStatus = ShiftStatus.OPEN
    created_at: datetime
    # optimistic concurrency token, bumped by the store on every commit
    version: int = 0
    claims: list[ShiftClaim] = Field(default_factory=list)

    def active_claim_for(self, casual_id: str) -> ShiftClaim | None:
        return next(
            (
                c
                for c in self.claims
                if c.casual_id == casual_id and c.status == ClaimStatus.CLAIMED
            ),
            None,
        )

    def claimed_casual_ids(self) -> set[str]:
        return {
            c.casual_id for c in self.claims if c.status == ClaimStatus.CLAIMED
        }


class ShiftNotification(BaseModel):
    id: str = Field(default_factory=new_id)
    shift_id: str
    casual_id: str
    claim_token: str
    token_status: TokenStatus = TokenStatus.PENDING
    created_at: datetime
    used_at: datetime | None = None

    def effective_status(self, now: datetime) -> TokenStatus:
        if (
            self.token_status == TokenStatus.PENDING
            and now - self.created_at >= CLAIM_TOKEN_VALIDITY
        ):
            return TokenStatus.EXPIRED
        return self.token_status

    def is_valid(self, now: datetime) -> bool:
        return self.effective_status(now) == TokenStatus.PENDING


class NotificationPayload(BaseModel):
    recipient_contact: str
    body_text: str
    action_url: str | None = None


class OutboxMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    message_type: MessageType
    payload: NotificationPayload
    status: OutboxStatus = OutboxStatus.PENDING
    created_at: datetime
    processed_at: datetime | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    shift_id: str | None = None
    notification_id: str | None = None
