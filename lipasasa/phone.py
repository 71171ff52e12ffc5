"""Payer phone number normalization for push payments."""

import re
from dataclasses import dataclass

from .exceptions import ValidationError


@dataclass(frozen=True)
class CountryRule:
    code: str
    dial_code: str
    pattern: re.Pattern


COUNTRY_RULES: dict[str, CountryRule] = {
    "KE": CountryRule("KE", "254", re.compile(r"^254[17]\d{8}$")),
    "TZ": CountryRule("TZ", "255", re.compile(r"^255[67]\d{8}$")),
    "UG": CountryRule("UG", "256", re.compile(r"^256[37]\d{8}$")),
    "RW": CountryRule("RW", "250", re.compile(r"^2507\d{8}$")),
}

_SEPARATORS = re.compile(r"[\s\-+.()]")


def normalize_msisdn(raw: str, country: str) -> str:
    """Return ``raw`` in canonical international form (e.g. ``254712345678``).

    The merchant's ``country`` decides the dial code applied to trunk-prefixed
    (``0712...``) and bare local (``712...``) numbers. Numbers that already
    carry a supported dial code are kept as they are.
    """
    rule = COUNTRY_RULES.get((country or "").upper())
    if rule is None:
        raise ValidationError(f"Unsupported country: {country}")

    digits = _SEPARATORS.sub("", raw or "")
    if not digits.isdigit():
        raise ValidationError(f"Invalid phone number: {raw}")

    # International access prefix, e.g. 00254...
    if digits.startswith("00"):
        digits = digits[2:]

    if digits.startswith("0"):
        digits = rule.dial_code + digits[1:]
    elif not any(digits.startswith(r.dial_code) for r in COUNTRY_RULES.values()):
        digits = rule.dial_code + digits

    if not any(r.pattern.match(digits) for r in COUNTRY_RULES.values()):
        raise ValidationError(
            f"Invalid phone number format. Use format like {rule.dial_code}712345678"
        )
    return digits
