"""
SMS unit counting.

Carriers bill concatenated SMS per segment. A message is GSM 7-bit encoded
unless any character falls outside the GSM basic and extended tables, in
which case the whole message is sent as UTF-16.

    encoding   single   per segment when concatenated
    GSM 7-bit    160      153
    UTF-16        70       67

Extended-table characters occupy two septets (escape + character).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

GSM_BASIC_CHARS = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
GSM_EXTENDED_CHARS = frozenset("^{}\\[~]|€")

GSM_SINGLE_LIMIT = 160
GSM_SEGMENT_LENGTH = 153
UTF16_SINGLE_LIMIT = 70
UTF16_SEGMENT_LENGTH = 67


class SmsEncoding(str, Enum):
    GSM7 = "gsm7bit"
    GSM7_EXTENDED = "gsm7bit_ex"
    UTF16 = "utf16"


@dataclass(frozen=True)
class SmsAnalysis:
    """Encoding, billed length and unit count of one message."""

    encoding: SmsEncoding
    length: int
    units: int


class InsufficientUnitsError(Exception):
    """Raised when a send would need more units than are available."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Message requires {required} SMS units but only {available} are available"
        )
        self.required = required
        self.available = available


def _utf16_length(text: str) -> int:
    # Characters outside the BMP take two code units (surrogate pair)
    return len(text.encode("utf-16-le")) // 2


def analyse(text: str) -> SmsAnalysis:
    """Classify `text` and compute how many carrier units it costs."""
    text = text or ""
    length = 0
    encoding = SmsEncoding.GSM7

    for char in text:
        if char in GSM_BASIC_CHARS:
            length += 1
        elif char in GSM_EXTENDED_CHARS:
            length += 2
            encoding = SmsEncoding.GSM7_EXTENDED
        else:
            encoding = SmsEncoding.UTF16
            break

    if encoding is SmsEncoding.UTF16:
        length = _utf16_length(text)
        single, per_segment = UTF16_SINGLE_LIMIT, UTF16_SEGMENT_LENGTH
    else:
        single, per_segment = GSM_SINGLE_LIMIT, GSM_SEGMENT_LENGTH

    if length <= single:
        units = 1
    else:
        units = math.ceil(length / per_segment)

    return SmsAnalysis(encoding=encoding, length=length, units=units)


def count(text: str) -> int:
    """Number of carrier message units `text` consumes (always >= 1)."""
    return analyse(text).units


def bulk_units(text: str, recipients: int) -> int:
    """Units consumed sending `text` to `recipients` numbers."""
    if recipients < 0:
        raise ValueError("recipients cannot be negative")
    return count(text) * recipients


def ensure_units_available(text: str, recipients: int, available: int) -> int:
    """
    Check a bulk send against the organisation's unit balance.

    Returns:
        int: Units the send will consume

    Raises:
        InsufficientUnitsError: If `available` does not cover the send
    """
    required = bulk_units(text, recipients)
    if required > available:
        raise InsufficientUnitsError(required=required, available=available)
    return required
