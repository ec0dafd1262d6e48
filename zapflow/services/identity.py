"""Contact identity normalization.

Maps raw identifiers (free-form phone strings, WhatsApp JIDs, linked-identity
aliases) to the canonical phone key used to match chats. Pure functions only.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

MIN_RELIABLE_DIGITS = 8
MAX_PHONE_DIGITS = 15  # E.164 upper bound; longer digit runs are list/alias ids

PHONE_DOMAINS = ("s.whatsapp.net", "c.us")
ALIAS_DOMAIN = "lid"
GROUP_DOMAINS = ("g.us", "broadcast", "newsletter")
GENERATED_PREFIXES = ("chat_", "cmin")

_NON_DIGITS = re.compile(r"\D")


class IdentityKind(str, Enum):
    PHONE = "phone"
    ALIAS = "alias"  # @lid, resolvable only through an alternate identifier
    GROUP = "group"  # never a contact identity
    GENERATED = "generated"  # locally minted ids (chat_..., cmin...)
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Identity:
    """Result of normalizing one raw identifier."""
    raw: str
    kind: IdentityKind
    key: Optional[str] = None

    @property
    def reliable(self) -> bool:
        return self.key is not None

    @property
    def is_alias(self) -> bool:
        return self.kind in (IdentityKind.ALIAS, IdentityKind.GENERATED)


def digits_only(value: Optional[str]) -> str:
    if not value:
        return ""
    return _NON_DIGITS.sub("", value)


def is_reliable_key(digits: str) -> bool:
    """A digit string is usable for matching only within phone-number length bounds."""
    return MIN_RELIABLE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS


def _split_jid(value: str):
    local, _, domain = value.strip().partition("@")
    # Multi-device JIDs carry a device suffix: 5511999998888:12@s.whatsapp.net
    local = local.split(":", 1)[0]
    return local, domain.lower()


def is_group_identifier(raw: Optional[str]) -> bool:
    if not raw:
        return False
    _, domain = _split_jid(raw)
    return domain in GROUP_DOMAINS


def is_generated_identifier(raw: Optional[str]) -> bool:
    if not raw:
        return False
    local, _ = _split_jid(raw)
    lowered = local.lower()
    return lowered.startswith(GENERATED_PREFIXES) or "cmin" in lowered


def _resolve_alternate(alternate: Optional[str]) -> Optional[str]:
    if not alternate:
        return None
    resolved = parse_identifier(alternate)
    if resolved.kind == IdentityKind.PHONE:
        return resolved.key
    return None


def parse_identifier(raw: Optional[str], alternate: Optional[str] = None) -> Identity:
    """
    Normalize a raw identifier.

    Args:
        raw: Phone string, JID or alias as reported by the gateway
        alternate: Secondary identifier (e.g. ``remoteJidAlt``/``senderPn``)
            consulted when ``raw`` cannot be resolved on its own

    Returns:
        Identity with ``key`` set only when a reliable phone key was found
    """
    if not raw or not raw.strip():
        fallback = _resolve_alternate(alternate)
        return Identity(raw or "", IdentityKind.PHONE if fallback else IdentityKind.UNKNOWN, fallback)

    if is_group_identifier(raw):
        return Identity(raw, IdentityKind.GROUP)

    if is_generated_identifier(raw):
        return Identity(raw, IdentityKind.GENERATED, _resolve_alternate(alternate))

    local, domain = _split_jid(raw)

    if domain == ALIAS_DOMAIN:
        return Identity(raw, IdentityKind.ALIAS, _resolve_alternate(alternate))

    if domain and domain not in PHONE_DOMAINS:
        return Identity(raw, IdentityKind.UNKNOWN, _resolve_alternate(alternate))

    digits = digits_only(local)
    if is_reliable_key(digits):
        return Identity(raw, IdentityKind.PHONE, digits)

    fallback = _resolve_alternate(alternate)
    if fallback:
        return Identity(raw, IdentityKind.PHONE, fallback)
    return Identity(raw, IdentityKind.UNKNOWN)


def canonical_key(raw: Optional[str], alternate: Optional[str] = None) -> Optional[str]:
    """Canonical phone key for ``raw``, or None when it is not a reliable contact identity."""
    return parse_identifier(raw, alternate).key


def to_jid(key: str) -> str:
    """Chat id used once a contact resolves to a phone number."""
    return f"{key}@s.whatsapp.net"
