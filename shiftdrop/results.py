"""
Result values returned by every engine and service operation.

Expected business outcomes are never raised: callers match on the result
type and map it to a response. Only infrastructure errors propagate.
"""

from dataclasses import dataclass
from enum import StrEnum


class FailureReason(StrEnum):
    INVALID_INPUT = "invalid_input"
    SHIFT_CANCELLED = "shift_cancelled"
    SHIFT_FILLED = "shift_filled"
    SHIFT_STARTED = "shift_started"
    ALREADY_CLAIMED = "already_claimed"
    CASUAL_INACTIVE = "casual_inactive"
    NO_ACTIVE_CLAIM = "no_active_claim"
    TOKEN_USED = "token_used"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    INVITE_ALREADY_ACCEPTED = "invite_already_accepted"
    INVITE_EXPIRED = "invite_expired"
    ALREADY_OPTED_OUT = "already_opted_out"


REASON_MESSAGES: dict[FailureReason, str] = {
    FailureReason.INVALID_INPUT: "Invalid request",
    FailureReason.SHIFT_CANCELLED: "This shift has been cancelled",
    FailureReason.SHIFT_FILLED: "This shift is already filled",
    FailureReason.SHIFT_STARTED: "This shift has already started",
    FailureReason.ALREADY_CLAIMED: "You have already claimed this shift",
    FailureReason.CASUAL_INACTIVE: "Casual is not active",
    FailureReason.NO_ACTIVE_CLAIM: "No active claim found for this shift",
    FailureReason.TOKEN_USED: "This link has already been used",
    FailureReason.TOKEN_REVOKED: "This shift is no longer available",
    FailureReason.TOKEN_EXPIRED: "This link has expired",
    FailureReason.TOKEN_INVALID: "This link is no longer valid",
    FailureReason.INVITE_ALREADY_ACCEPTED: "Invite has already been accepted",
    FailureReason.INVITE_EXPIRED: "Invite has expired",
    FailureReason.ALREADY_OPTED_OUT: "Already opted out",
}

CONFLICT_MESSAGE = "Sorry, this shift was just filled. Try another!"
CASUAL_CONFLICT_MESSAGE = "This casual was just updated. Please try again."


@dataclass(frozen=True, slots=True)
class Success[T]:
    value: T


@dataclass(frozen=True, slots=True)
class ValidationFailure:
    message: str
    reason: FailureReason = FailureReason.INVALID_INPUT


@dataclass(frozen=True, slots=True)
class PreconditionFailure:
    reason: FailureReason

    @property
    def message(self) -> str:
        return REASON_MESSAGES[self.reason]


@dataclass(frozen=True, slots=True)
class NotFound:
    message: str = "Not found"


@dataclass(frozen=True, slots=True)
class Conflict:
    message: str = CONFLICT_MESSAGE


type Failure = ValidationFailure | PreconditionFailure | NotFound | Conflict
type Result[T] = Success[T] | Failure


def fail(reason: FailureReason) -> PreconditionFailure:
    return PreconditionFailure(reason)
