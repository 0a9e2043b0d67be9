"""GSTIN format, checksum and state-code checks.

A GSTIN is 15 characters: 2-digit state code, 10-character PAN, entity
number, the literal ``Z`` and a base-36 check character computed over the
first 14 characters.
"""

import re
from dataclasses import dataclass

GSTIN_LENGTH = 15
GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")
CHECKSUM_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

STATE_CODES: dict[str, str] = {
    "01": "Jammu & Kashmir",
    "02": "Himachal Pradesh",
    "03": "Punjab",
    "04": "Chandigarh",
    "05": "Uttarakhand",
    "06": "Haryana",
    "07": "Delhi",
    "08": "Rajasthan",
    "09": "Uttar Pradesh",
    "10": "Bihar",
    "11": "Sikkim",
    "12": "Arunachal Pradesh",
    "13": "Nagaland",
    "14": "Manipur",
    "15": "Mizoram",
    "16": "Tripura",
    "17": "Meghalaya",
    "18": "Assam",
    "19": "West Bengal",
    "20": "Jharkhand",
    "21": "Odisha",
    "22": "Chhattisgarh",
    "23": "Madhya Pradesh",
    "24": "Gujarat",
    "25": "Daman & Diu",
    "26": "Dadra & Nagar Haveli",
    "27": "Maharashtra",
    "29": "Karnataka",
    "30": "Goa",
    "31": "Lakshadweep",
    "32": "Kerala",
    "33": "Tamil Nadu",
    "34": "Puducherry",
    "35": "Andaman & Nicobar Islands",
    "36": "Telangana",
    "37": "Andhra Pradesh",
    "38": "Ladakh",
}


@dataclass(frozen=True)
class GstinCheck:
    """Outcome of a GSTIN format/checksum check."""

    valid: bool
    confidence: float
    state_code: str | None
    message: str


def compute_check_character(first14: str) -> str:
    """Check character for the first 14 GSTIN characters.

    Raises:
        ValueError: If a character is outside ``0-9A-Z``
    """
    radix = len(CHECKSUM_ALPHABET)
    total = 0
    for position, char in enumerate(first14[:14]):
        value = CHECKSUM_ALPHABET.index(char)
        product = value * (position % 2 + 1)
        total += product // radix + product % radix
    return CHECKSUM_ALPHABET[(radix - total % radix) % radix]


def verify_checksum(gstin: str) -> bool:
    if len(gstin) != GSTIN_LENGTH:
        return False
    try:
        return compute_check_character(gstin[:14]) == gstin[14]
    except ValueError:
        return False


def check_gstin(gstin: str | None) -> GstinCheck:
    """Validate a GSTIN.

    Confidence: 0 when absent or of the wrong length, 0.3 when 15 characters
    but malformed, 0.85 when the format holds but the checksum does not,
    1.0 when both hold.
    """
    if not gstin or not gstin.strip():
        return GstinCheck(False, 0.0, None, "GSTIN is required")

    clean = gstin.strip().upper()
    if len(clean) != GSTIN_LENGTH:
        return GstinCheck(
            False, 0.0, None, f"GSTIN must be {GSTIN_LENGTH} characters (found {len(clean)})"
        )

    if not GSTIN_PATTERN.match(clean):
        return GstinCheck(
            False,
            0.3,
            clean[:2],
            "GSTIN format is invalid (expected: 99AAAAA9999A9Z9)",
        )

    if not verify_checksum(clean):
        return GstinCheck(True, 0.85, clean[:2], "GSTIN format valid but checksum verification failed")

    return GstinCheck(True, 1.0, clean[:2], "GSTIN is valid")


def state_name(state_code: str | None) -> str | None:
    if state_code is None:
        return None
    return STATE_CODES.get(state_code)
