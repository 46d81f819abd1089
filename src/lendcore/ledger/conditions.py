"""PREIMAGE-SHA-256 crypto-conditions used to lock and release collateral escrows."""

from __future__ import annotations

import hashlib
import re
import secrets

PREIMAGE_BYTES = 32
_CONDITION_PREFIX = "A0258020"
_CONDITION_SUFFIX = "810120"
_FULFILLMENT_PREFIX = "A0228020"
_PREIMAGE_RE = re.compile(r"^[0-9A-Fa-f]{64}$")


def is_valid_preimage(preimage: str) -> bool:
    return bool(_PREIMAGE_RE.match(preimage or ""))


def condition_for(preimage: str) -> str:
    """DER-encoded condition for a 32-byte hex preimage."""
    digest = hashlib.sha256(bytes.fromhex(preimage)).hexdigest().upper()
    return f"{_CONDITION_PREFIX}{digest}{_CONDITION_SUFFIX}"


def fulfillment_for(preimage: str) -> str:
    return f"{_FULFILLMENT_PREFIX}{preimage.upper()}"


def generate_condition() -> dict[str, str]:
    """Fresh random preimage with its condition and fulfillment."""
    preimage = secrets.token_hex(PREIMAGE_BYTES).upper()
    return {
        "preimage": preimage,
        "condition": condition_for(preimage),
        "fulfillment": fulfillment_for(preimage),
    }


def verify_condition(condition: str, fulfillment: str, preimage: str) -> bool:
    """True when condition and fulfillment are both derived from preimage."""
    if not is_valid_preimage(preimage):
        return False
    return (
        condition.upper() == condition_for(preimage)
        and fulfillment.upper() == fulfillment_for(preimage)
    )
