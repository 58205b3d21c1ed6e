"""Contact address normalization.

Two canonical address kinds reach the store:

- phone form: ``<10-15 digits>@s.whatsapp.net``
- local-id form: ``<opaque>@lid`` (or an over-long number on the phone domain)
"""

import re

from wabridge.errors import InvalidAddress

PHONE_DOMAIN = "s.whatsapp.net"
LOCAL_ID_SUFFIX = "@lid"
GROUP_SUFFIX = "@g.us"
BROADCAST_ADDRESS = "status@broadcast"

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

_PHONE_DOMAIN_RE = re.compile(r"^(\d+)@" + re.escape(PHONE_DOMAIN) + r"$")
_NON_DIGIT_RE = re.compile(r"\D")


def normalize_address(raw: str | None) -> str:
    """Turn '+20 123 456 7890', '201234567890' or a phone address into '<digits>@s.whatsapp.net'."""
    if not raw or not raw.strip():
        raise InvalidAddress(raw, "address is required")

    local_part = raw.split("@", 1)[0]
    digits = _NON_DIGIT_RE.sub("", local_part)
    if len(digits) < MIN_PHONE_DIGITS:
        raise InvalidAddress(raw)

    return f"{digits}@{PHONE_DOMAIN}"


def is_phone_address(address: str | None) -> bool:
    if not address:
        return False
    match = _PHONE_DOMAIN_RE.match(address)
    if not match:
        return False
    return MIN_PHONE_DIGITS <= len(match.group(1)) <= MAX_PHONE_DIGITS


def is_local_id_address(address: str | None) -> bool:
    if not address:
        return False
    if address.endswith(LOCAL_ID_SUFFIX):
        return True
    match = _PHONE_DOMAIN_RE.match(address)
    if not match:
        return False
    return len(match.group(1)) > MAX_PHONE_DIGITS


def is_group_address(address: str | None) -> bool:
    return bool(address) and address.endswith(GROUP_SUFFIX)


def is_broadcast_address(address: str | None) -> bool:
    return address == BROADCAST_ADDRESS


def should_ignore_address(address: str | None) -> bool:
    """Empty and broadcast addresses never produce chats."""
    return not address or is_broadcast_address(address)


def address_digits(address: str | None) -> str:
    if not address:
        return ""
    return address.split("@", 1)[0]


def coerce_target_address(raw: str) -> str:
    """Address for an outbound send: local-id and group targets pass through, anything else is normalized."""
    candidate = (raw or "").strip()
    if is_local_id_address(candidate) or is_group_address(candidate):
        return candidate
    return normalize_address(candidate)


def require_routable_address(address: str | None) -> str:
    """Accept phone, local-id or group addresses coming off the transport."""
    if is_phone_address(address) or is_local_id_address(address) or is_group_address(address):
        return address
    raise InvalidAddress(address, "not a phone, local-id or group address")
