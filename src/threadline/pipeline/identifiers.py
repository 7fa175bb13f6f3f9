"""
Remote-party identifier normalization.

The gateway addresses the same contact under several historical schemes
(``<phone>@s.whatsapp.net``, ``<phone>@c.us``, ``<id>@lid``). Individual
identifiers are reduced to digits and re-suffixed with the canonical suffix;
group and broadcast identifiers are not phone-derived and pass through.
"""

import re
from typing import Optional

INDIVIDUAL_SUFFIX = "@s.whatsapp.net"
LEGACY_INDIVIDUAL_SUFFIXES = ("@c.us", "@lid")
GROUP_SUFFIX = "@g.us"
BROADCAST_SUFFIX = "@broadcast"
STATUS_BROADCAST_JID = "status@broadcast"

_NON_DIGITS = re.compile(r"\D")
_DEVICE_PART = re.compile(r":\d+(?=@|$)")


def is_group_jid(jid: Optional[str]) -> bool:
    """True for group identifiers."""
    return bool(jid) and GROUP_SUFFIX in jid


def is_broadcast_jid(jid: Optional[str]) -> bool:
    """True for broadcast lists and the status channel."""
    return bool(jid) and (jid == STATUS_BROADCAST_JID or jid.endswith(BROADCAST_SUFFIX))


def _strip_suffix(jid: str) -> str:
    for suffix in (INDIVIDUAL_SUFFIX,) + LEGACY_INDIVIDUAL_SUFFIXES:
        if jid.endswith(suffix):
            return jid[: -len(suffix)]
    return jid


def normalize_remote_jid(jid: Optional[str]) -> Optional[str]:
    """
    Canonicalize a remote-party identifier.

    Args:
        jid: Raw identifier as sent by the gateway

    Returns:
        Canonical identifier, or None when nothing usable was supplied

    Examples:
        >>> normalize_remote_jid("5511999999999@c.us")
        '5511999999999@s.whatsapp.net'
        >>> normalize_remote_jid("5511999999999:12@s.whatsapp.net")
        '5511999999999@s.whatsapp.net'
        >>> normalize_remote_jid("120363041234567890@g.us")
        '120363041234567890@g.us'
        >>> normalize_remote_jid("") is None
        True
    """
    if not jid or not isinstance(jid, str):
        return None
    jid = jid.strip()
    if not jid:
        return None

    if is_group_jid(jid) or is_broadcast_jid(jid):
        return jid

    # Multi-device identifiers carry a ":<device>" part before the suffix
    digits = _NON_DIGITS.sub("", _DEVICE_PART.sub("", _strip_suffix(jid)))
    if not digits:
        return None
    return f"{digits}{INDIVIDUAL_SUFFIX}"


def extract_phone(jid: Optional[str]) -> str:
    """
    Extract the bare digit string of an individual identifier.

    Returns an empty string for groups, broadcasts and unusable input.

    Examples:
        >>> extract_phone("5511999999999@s.whatsapp.net")
        '5511999999999'
        >>> extract_phone("120363041234567890@g.us")
        ''
    """
    if not jid or not isinstance(jid, str):
        return ""
    if is_group_jid(jid) or is_broadcast_jid(jid):
        return ""
    return _NON_DIGITS.sub("", _DEVICE_PART.sub("", _strip_suffix(jid.strip())))


def legacy_variants(phone: str) -> list[str]:
    """Non-canonical spellings under which an individual may have been stored."""
    if not phone:
        return []
    return [f"{phone}{suffix}" for suffix in LEGACY_INDIVIDUAL_SUFFIXES] + [phone]
