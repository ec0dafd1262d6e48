"""Tests for contact identity normalization."""

import pytest

from zapflow.services.identity import (
    IdentityKind,
    canonical_key,
    digits_only,
    is_group_identifier,
    parse_identifier,
    to_jid,
)

PHONE = "5511999998888"
PHONE_JID = f"{PHONE}@s.whatsapp.net"
ALIAS = "123456789012345@lid"


class TestParseIdentifier:
    """Raw identifier normalization."""

    @pytest.mark.parametrize("raw", [
        PHONE_JID,
        f"{PHONE}@c.us",
        f"{PHONE}:12@s.whatsapp.net",
        "+55 (11) 99999-8888",
        PHONE,
    ])
    def test_phone_forms_share_one_key(self, raw):
        identity = parse_identifier(raw)
        assert identity.kind == IdentityKind.PHONE
        assert identity.key == PHONE
        assert identity.reliable

    def test_alias_without_alternate_is_unresolved(self):
        identity = parse_identifier(ALIAS)
        assert identity.kind == IdentityKind.ALIAS
        assert identity.key is None
        assert identity.is_alias

    def test_alias_resolves_through_alternate(self):
        identity = parse_identifier(ALIAS, PHONE_JID)
        assert identity.kind == IdentityKind.ALIAS
        assert identity.key == PHONE

    def test_alias_alternate_must_be_a_phone(self):
        assert parse_identifier(ALIAS, "999@lid").key is None

    def test_group_is_never_a_contact(self):
        identity = parse_identifier("120363025246125888@g.us", PHONE_JID)
        assert identity.kind == IdentityKind.GROUP
        assert identity.key is None
        assert is_group_identifier("status@broadcast")

    @pytest.mark.parametrize("raw", ["chat_1700000000", "cmin4f2a9", "CHAT_ABC@lid"])
    def test_generated_ids(self, raw):
        identity = parse_identifier(raw)
        assert identity.kind == IdentityKind.GENERATED
        assert identity.key is None

    @pytest.mark.parametrize("raw", ["1234", "12345678901234567@s.whatsapp.net", "user@example.com"])
    def test_unreliable_identifiers_have_no_key(self, raw):
        identity = parse_identifier(raw)
        assert identity.kind == IdentityKind.UNKNOWN
        assert identity.key is None

    def test_empty_identifier_falls_back_to_alternate(self):
        assert parse_identifier("").kind == IdentityKind.UNKNOWN
        assert parse_identifier(None, PHONE_JID).key == PHONE

    def test_short_phone_uses_alternate(self):
        assert canonical_key("1234@s.whatsapp.net", PHONE_JID) == PHONE


def test_digits_only():
    assert digits_only("+55 (11) 9999-8888") == "551199998888"
    assert digits_only(None) == ""


def test_to_jid_round_trips_key():
    assert to_jid(PHONE) == PHONE_JID
    assert canonical_key(to_jid(PHONE)) == PHONE
