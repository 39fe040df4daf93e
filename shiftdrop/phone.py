"""
Phone number normalisation to E.164.

Local Australian mobiles are accepted as typed (``0412 345 678``) and turned
into ``+61412345678``.
"""

from shiftdrop.results import Success, ValidationFailure


def _normalize(raw: str) -> str:
    digits = "".join(ch for ch in raw if ch.isdigit() or ch == "+")

    if digits.startswith("+"):
        return digits
    if digits.startswith("04") and len(digits) == 10:
        return "+61" + digits[1:]
    if digits.startswith("61") and len(digits) == 11:
        return "+" + digits
    return "+" + digits


def _is_valid(normalized: str) -> bool:
    if not normalized.startswith("+"):
        return False
    rest = normalized[1:]
    return 7 <= len(rest) <= 15 and rest.isdigit()


def parse_phone_number(raw: str | None) -> Success[str] | ValidationFailure:
    if raw is None or not raw.strip():
        return ValidationFailure("Phone number is required")

    normalized = _normalize(raw.strip())
    if not _is_valid(normalized):
        return ValidationFailure("Invalid phone number format")

    return Success(normalized)


def redact(phone: str) -> str:
    return f"***{phone[-4:]}" if len(phone) > 4 else "****"
