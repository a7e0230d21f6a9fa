"""Kenyan M-Pesa phone number normalization."""

import re
from typing import Optional

_SEPARATORS = re.compile(r"[\s\-()]")
_LOCAL = re.compile(r"^0[71]\d{8}$")
_SHORT = re.compile(r"^[71]\d{8}$")
_INTERNATIONAL = re.compile(r"^254[71]\d{8}$")


def normalize_kenyan_phone(raw: Optional[str]) -> Optional[str]:
    """Return the number as 254XXXXXXXXX, or None when it is not a Kenyan mobile number.

    Accepts 07XXXXXXXX, 01XXXXXXXX, 7XXXXXXXX, +2547XXXXXXXX and 2547XXXXXXXX.
    """
    if not raw:
        return None
    value = _SEPARATORS.sub("", str(raw).strip())
    if value.startswith("+"):
        value = value[1:]
    if _LOCAL.match(value):
        return "254" + value[1:]
    if _SHORT.match(value):
        return "254" + value
    if _INTERNATIONAL.match(value):
        return value
    return None
