"""
Phone Normalization

Converts between human / transport phone formats and the storage format.

Storage format: digits only, with country code ("5511999990000").
Transport format: storage format plus the WhatsApp Web user suffix
("5511999990000@c.us").
"""

import re

USER_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"

# Longest number still treated as local (area code + subscriber)
MAX_LOCAL_DIGITS = 11

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None, default_country_code: str = "55") -> str:
    """
    Canonicalize a phone identifier for storage.

    Never raises; malformed input degrades to whatever digits it contains.

    >>> normalize_phone("(11) 99999-0000")
    '5511999990000'
    >>> normalize_phone("5511999990000@c.us")
    '5511999990000'
    """
    if not raw:
        return ""
    value = str(raw).split("@", 1)[0]
    digits = _NON_DIGITS.sub("", value)
    if not digits:
        return ""
    if not digits.startswith(default_country_code) and len(digits) <= MAX_LOCAL_DIGITS:
        digits = default_country_code + digits
    return digits


def to_transport_address(raw: str | None, default_country_code: str = "55") -> str:
    """
    Build the address used to send a message to a user.

    An address that already carries the user suffix is re-normalized but not
    suffixed twice.

    >>> to_transport_address("5511999990000@c.us")
    '5511999990000@c.us'
    """
    digits = normalize_phone(raw, default_country_code)
    if not digits:
        return ""
    return f"{digits}{USER_SUFFIX}"


def is_group_address(address: str | None) -> bool:
    """Check if a transport address points to a group chat."""
    return bool(address) and address.endswith(GROUP_SUFFIX)


def phone_suffix(phone: str, length: int = 8) -> str:
    """Trailing digits used to fuzzy-match phones typed in other systems."""
    return _NON_DIGITS.sub("", phone or "")[-length:]
