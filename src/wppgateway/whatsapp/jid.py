"""Conversation identifier (JID) normalization.

A canonical identifier is `<local-part>@<domain>` where the domain is the
person, group or broadcast domain. normalize_conversation_id() is
idempotent: normalizing a canonical identifier returns it unchanged.
"""

from typing import Any

PERSON_DOMAIN = "s.whatsapp.net"
GROUP_DOMAIN = "g.us"
BROADCAST_DOMAIN = "broadcast"

KNOWN_DOMAINS = frozenset({PERSON_DOMAIN, GROUP_DOMAIN, BROADCAST_DOMAIN})


def normalize_conversation_id(raw: Any) -> str | None:
    """Normalize a phone number or raw chat identifier into a canonical JID.

    Rules:
    - Non-string or blank input -> None.
    - With "@": local part kept as-is, domain lower-cased; an empty or
      unknown domain falls back to the person domain. Empty local part -> None.
    - Without "@": a hyphen means a legacy group id ("1234-5678"),
      anything else is a person.

    Never raises.
    """
    if not isinstance(raw, str):
        return None

    value = raw.strip()
    if not value:
        return None

    if "@" not in value:
        # Legacy heuristic: group ids were "<creator>-<timestamp>"
        domain = GROUP_DOMAIN if "-" in value else PERSON_DOMAIN
        return f"{value}@{domain}"

    local, _, domain = value.partition("@")
    local = local.strip()
    domain = domain.strip().lower()

    if not local:
        return None

    if domain not in KNOWN_DOMAINS:
        domain = PERSON_DOMAIN

    return f"{local}@{domain}"


def is_group_id(jid: str | None) -> bool:
    """True if the (canonical) identifier names a group conversation."""
    return bool(jid) and jid.endswith(f"@{GROUP_DOMAIN}")  # type: ignore[union-attr]


def local_part(jid: str) -> str:
    """Return the part before "@" (phone number or group id)."""
    return jid.split("@", 1)[0]


def first_identifier(record: dict[str, Any], *keys: str) -> str | None:
    """Return the first non-empty string value among `keys` in record."""
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None
