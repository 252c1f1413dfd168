"""Sensitive-data policy for audit metadata.

Audit records must never carry raw secrets. The policy rejects metadata
keys that name secret material and any string value that is structurally
a payment card number (length, issuer prefix and Luhn checksum).

Usage:
    from auditchain.chain.policy import SensitiveDataPolicy

    policy = SensitiveDataPolicy()
    violations = policy.scan({"card_number": "4111 1111 1111 1111"})
"""

from __future__ import annotations

import logging
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Keys that name secret material. Compared after normalization (lowercase, '-' → '_').
PROHIBITED_KEYS: frozenset[str] = frozenset({
    "pan",
    "card_number",
    "cardnumber",
    "credit_card",
    "credit_card_number",
    "cvv",
    "cvv2",
    "cvc",
    "card_verification_value",
    "pin",
    "pin_block",
    "track_data",
    "track1",
    "track2",
    "magnetic_stripe",
    "password",
    "passwd",
    "secret",
    "client_secret",
    "api_key",
    "access_token",
    "refresh_token",
    "private_key",
    "ssn",
    "social_security_number",
    "document_content",
    "document_body",
    "file_content",
    "raw_document",
})

# Issuer identification prefixes of the major card networks.
_CARD_PREFIXES: tuple[str, ...] = (
    "4",  # Visa
    "51", "52", "53", "54", "55",  # Mastercard
    "2221", "2720", "222", "223", "224", "225", "226", "227", "23", "24", "25", "26", "270", "271",
    "34", "37",  # American Express
    "6011", "65", "644", "645", "646", "647", "648", "649",  # Discover
    "35",  # JCB
    "36", "300", "301", "302", "303", "304", "305", "38", "39",  # Diners
    "62",  # UnionPay
)

_PAN_MIN_DIGITS = 13
_PAN_MAX_DIGITS = 19


@dataclass(frozen=True)
class PolicyViolation:
    """A single rejected metadata entry."""

    path: str
    reason: str


def luhn_valid(digits: str) -> bool:
    """Check the Luhn (mod 10) checksum of an ASCII digit string."""
    if not (digits.isascii() and digits.isdigit()):
        return False
    total = 0
    for index, char in enumerate(reversed(digits)):
        value = int(char)
        if index % 2 == 1:
            value *= 2
            if value > 9:
                value -= 9
        total += value
    return total % 10 == 0


def ascii_digits(value: str) -> str | None:
    """Map decimal digits of any script to ASCII, dropping space and dash separators.

    None when any other character is present (superscripts and other
    non-decimal numerics included).
    """
    digits: list[str] = []
    for char in value:
        if char in " -":
            continue
        digit = unicodedata.decimal(char, None)
        if digit is None:
            return None
        digits.append(str(digit))
    return "".join(digits)


def looks_like_pan(value: str) -> bool:
    """True if ``value`` is structurally a primary account number.

    Spaces and dashes are accepted as separators; any other character
    disqualifies the value. Digits are compared script-independently.
    """
    compact = ascii_digits(value)
    if not compact:
        return False
    if not _PAN_MIN_DIGITS <= len(compact) <= _PAN_MAX_DIGITS:
        return False
    if not compact.startswith(_CARD_PREFIXES):
        return False
    return luhn_valid(compact)


def normalize_key(key: str) -> str:
    return key.strip().lower().replace("-", "_")


class SensitiveDataPolicy:
    """Rejects secret-bearing metadata before a record is hashed."""

    def __init__(self, extra_prohibited_keys: Iterable[str] = ()) -> None:
        self._prohibited = PROHIBITED_KEYS | {normalize_key(k) for k in extra_prohibited_keys}

    @property
    def prohibited_keys(self) -> frozenset[str]:
        return frozenset(self._prohibited)

    def scan(self, metadata: dict[str, Any]) -> list[PolicyViolation]:
        """Return every violation found in ``metadata`` (recursively)."""
        violations: list[PolicyViolation] = []
        self._scan_value(metadata, "metadata", violations)
        return violations

    def _scan_value(self, value: Any, path: str, violations: list[PolicyViolation]) -> None:
        if isinstance(value, dict):
            for key, child in value.items():
                child_path = f"{path}.{key}"
                if isinstance(key, str) and normalize_key(key) in self._prohibited:
                    violations.append(PolicyViolation(child_path, "prohibited key"))
                    continue
                self._scan_value(child, child_path, violations)
        elif isinstance(value, (list, tuple)):
            for index, child in enumerate(value):
                self._scan_value(child, f"{path}[{index}]", violations)
        elif isinstance(value, str) and looks_like_pan(value):
            violations.append(PolicyViolation(path, "value is a payment card number"))
        elif isinstance(value, int) and not isinstance(value, bool) and looks_like_pan(str(value)):
            violations.append(PolicyViolation(path, "value is a payment card number"))
