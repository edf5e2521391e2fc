"""
Referral attribution.

A referral code rides along on the Stripe Checkout session metadata and is
stored on the profile when ``checkout.session.completed`` arrives. First touch
wins: a code already on the profile is never replaced.
"""

from __future__ import annotations

import re
from typing import Any, Optional

MAX_REFERRAL_CODE_LENGTH = 20

_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]+$")


def normalize_referral_code(value: Any) -> Optional[str]:
    """Trimmed, upper-cased code, or None when missing or malformed."""
    if not isinstance(value, str):
        return None
    code = value.strip().upper()
    if not code or len(code) > MAX_REFERRAL_CODE_LENGTH or not _CODE_PATTERN.match(code):
        return None
    return code
