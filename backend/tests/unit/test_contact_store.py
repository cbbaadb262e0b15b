"""
Unit Tests for Contact Parsing and the Contact Store
"""
import pytest

from campaign_engine.domain.models.contact import ContactInput
from campaign_engine.domain.services.contact_store import (
    ContactStore,
    normalize_phone_number,
    parse_contact_rows,
    parse_contacts_csv,
)


class TestNormalizePhoneNumber:
    """Tests for E.164 normalization"""

    @pytest.mark.parametrize("raw,expected", [
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("15551234567", "+15551234567"),
        ("+1 555 123 4567", "+15551234567"),
    ])
    def test_valid_formats(self, raw, expected):
        assert normalize_phone_number(raw) == expected

    @pytest.mark.parametrize("raw,message", [
        ("call me", "Invalid phone number"),
        ("12345", "too short"),
        ("1234567890123456", "too long"),
    ])
    def test_invalid_numbers(self, raw, message):
        with pytest.raises(ValueError, match=message):
            normalize_phone_number(raw)


class TestParseContactsCsv:
    """Tests for parse_contacts_csv()"""

    def test_header_aliases(self):
        result = parse_contacts_csv("Phone,FirstName,LastName\n5551234567,Jane,Doe\n")

        assert len(result.contacts) == 1
        contact = result.contacts[0]
        assert contact.phone_number == "+15551234567"
        assert (contact.first_name, contact.last_name) == ("Jane", "Doe")

    def test_errors_and_duplicates(self):
        text = (
            "phone_number,first_name\n"
            ",Bob\n"
            "5551234567,Ann\n"
            "(555) 123-4567,Ann again\n"
            "12,Short\n"
        )

        result = parse_contacts_csv(text)

        assert result.total_rows == 4
        assert [c.first_name for c in result.contacts] == ["Ann"]
        assert result.duplicates_skipped == 1
        assert [e["row"] for e in result.errors] == [2, 5]
        assert result.errors[0]["error"] == "Missing phone_number"

    def test_utf8_bom_bytes(self):
        content = "phone_number,first_name\n+15551234567,Zoë\n".encode("utf-8-sig")

        result = parse_contacts_csv(content)

        assert result.contacts[0].first_name == "Zoë"

    def test_no_valid_rows(self):
        with pytest.raises(ValueError, match="No valid contacts"):
            parse_contacts_csv("phone_number\nabc\n")


class TestParseContactRows:
    """Tests for parse_contact_rows()"""

    def test_normalizes_and_dedupes(self):
        rows = [
            ContactInput(phone_number="(555) 123-4567", first_name="A"),
            ContactInput(phone_number="+15551234567", first_name="B"),
            ContactInput(phone_number="123", first_name="C"),
        ]

        result = parse_contact_rows(rows)

        assert [(c.phone_number, c.first_name) for c in result.contacts] == [("+15551234567", "A")]
        assert result.duplicates_skipped == 1
        assert result.errors[0]["row"] == 2

    def test_no_valid_rows(self):
        with pytest.raises(ValueError):
            parse_contact_rows([ContactInput(phone_number="12")])


class TestContactStore:
    """Tests for ContactStore persistence"""

    @pytest.mark.asyncio
    async def test_load_and_list(self, supabase):
        store = ContactStore(supabase)

        loaded = await store.load_contacts("campaign-1", [
            ContactInput(phone_number="5551234567", first_name="Jane"),
            ContactInput(phone_number="5559876543"),
        ])

        assert loaded == 2
        pending = await store.list_pending("campaign-1")
        assert {c.phone_number for c in pending} == {"+15551234567", "+15559876543"}
        assert all(c.status == "pending" for c in pending)

    @pytest.mark.asyncio
    async def test_load_empty(self, supabase):
        assert await ContactStore(supabase).load_contacts("campaign-1", []) == 0
        assert supabase.rows("campaign_contacts") == []

    @pytest.mark.asyncio
    async def test_mark_called_and_failed(self, supabase):
        store = ContactStore(supabase)
        await store.load_contacts("campaign-1", [
            ContactInput(phone_number="5551234567"),
            ContactInput(phone_number="5559876543"),
        ])
        first, second = supabase.rows("campaign_contacts")

        await store.mark_called(first["id"], "run-1")
        await store.mark_failed(second["id"], "run-2")

        assert (await store.get_contact(first["id"])).agent_run_id == "run-1"
        assert (await store.get_contact(second["id"])).status == "failed"
        assert await store.count_by_status("campaign-1") == {"pending": 0, "called": 1, "failed": 1}
        assert await store.list_pending("campaign-1") == []

    @pytest.mark.asyncio
    async def test_get_missing_contact(self, supabase):
        assert await ContactStore(supabase).get_contact("nope") is None
