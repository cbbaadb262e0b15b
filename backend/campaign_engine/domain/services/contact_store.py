"""
Contact Store
Parses campaign contact lists and owns the campaign_contacts rows
"""
import csv
import io
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union

from supabase import Client

from campaign_engine.domain.models.contact import Contact, ContactInput, ContactStatus

logger = logging.getLogger(__name__)

# Accepted header spellings, first match wins
PHONE_HEADERS = ("phone_number", "Phone", "phone")
FIRST_NAME_HEADERS = ("first_name", "FirstName", "first", "First")
LAST_NAME_HEADERS = ("last_name", "LastName", "last", "Last")


def normalize_phone_number(phone: str) -> str:
    """
    Normalize phone number to E.164 format.

    Handles common formats:
    - (555) 123-4567 -> +15551234567 (assumes US if no country code)
    - 555.123.4567 -> +15551234567
    - +44 20 7946 0958 -> +442079460958
    """
    has_plus = phone.strip().startswith('+')
    cleaned = re.sub(r'[^\d]', '', phone)

    if not cleaned:
        raise ValueError("Invalid phone number")

    # International minimum is 7 digits, E.164 maximum is 15
    if len(cleaned) < 7:
        raise ValueError("Phone number too short (minimum 7 digits)")
    if len(cleaned) > 15:
        raise ValueError("Phone number too long (maximum 15 digits)")

    if has_plus:
        return f"+{cleaned}"

    # US/Canada without country code
    if len(cleaned) == 10:
        return f"+1{cleaned}"

    return f"+{cleaned}"


@dataclass
class ContactParseResult:
    """Parsed contact list plus per-row problems"""
    contacts: List[ContactInput] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)
    total_rows: int = 0
    duplicates_skipped: int = 0


def _first_value(row: Dict[str, Optional[str]], headers: tuple) -> Optional[str]:
    for header in headers:
        value = row.get(header)
        if value and value.strip():
            return value.strip()
    return None


def decode_csv_bytes(content: bytes) -> str:
    """Decode an uploaded CSV, trying the encodings spreadsheets usually emit."""
    for encoding in ['utf-8-sig', 'utf-8', 'latin-1', 'cp1252']:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ValueError("Unable to decode CSV file. Please use UTF-8 encoding.")


def parse_contacts_csv(content: Union[str, bytes]) -> ContactParseResult:
    """
    Parse a contact list CSV.

    Rows without a phone number, or with one that cannot be normalized, are
    reported in ``errors`` and skipped. Duplicate numbers within the file are
    skipped.

    Raises:
        ValueError: No valid contacts found
    """
    if isinstance(content, bytes):
        content = decode_csv_bytes(content)

    result = ContactParseResult()
    seen_phones = set()

    reader = csv.DictReader(io.StringIO(content))
    for row_num, row in enumerate(reader, start=2):  # Row 1 is header
        result.total_rows += 1

        phone_raw = _first_value(row, PHONE_HEADERS)
        if not phone_raw:
            result.errors.append({"row": row_num, "error": "Missing phone_number", "phone": None})
            continue

        try:
            phone = normalize_phone_number(phone_raw)
        except ValueError as e:
            result.errors.append({"row": row_num, "error": str(e), "phone": phone_raw})
            continue

        if phone in seen_phones:
            result.duplicates_skipped += 1
            continue
        seen_phones.add(phone)

        result.contacts.append(ContactInput(
            phone_number=phone,
            first_name=_first_value(row, FIRST_NAME_HEADERS) or "",
            last_name=_first_value(row, LAST_NAME_HEADERS) or "",
        ))

    if not result.contacts:
        raise ValueError("No valid contacts found in CSV file")

    return result


def parse_contact_rows(rows: List[ContactInput]) -> ContactParseResult:
    """Normalize and de-duplicate contact rows submitted as JSON."""
    result = ContactParseResult(total_rows=len(rows))
    seen_phones = set()

    for index, row in enumerate(rows):
        try:
            phone = normalize_phone_number(row.phone_number)
        except ValueError as e:
            result.errors.append({"row": index, "error": str(e), "phone": row.phone_number})
            continue

        if phone in seen_phones:
            result.duplicates_skipped += 1
            continue
        seen_phones.add(phone)

        result.contacts.append(row.model_copy(update={"phone_number": phone}))

    if not result.contacts:
        raise ValueError("No valid contacts provided")

    return result


class ContactStore:
    """
    Persistence for campaign contacts.

    load_contacts is not idempotent: calling it twice for a campaign
    duplicates its rows, so campaign creation calls it exactly once.
    """

    TABLE = "campaign_contacts"

    def __init__(self, supabase: Client):
        self._supabase = supabase

    async def load_contacts(self, campaign_id: str, rows: List[ContactInput]) -> int:
        """Bulk insert rows as pending contacts. Returns the number inserted."""
        if not rows:
            return 0

        now = datetime.utcnow().isoformat()
        records = []
        for row in rows:
            records.append({
                "id": str(uuid.uuid4()),
                "campaign_id": campaign_id,
                "phone_number": normalize_phone_number(row.phone_number),
                "first_name": row.first_name,
                "last_name": row.last_name,
                "status": ContactStatus.PENDING.value,
                "created_at": now,
            })

        self._supabase.table(self.TABLE).insert(records).execute()
        logger.info(f"Loaded {len(records)} contacts into campaign {campaign_id}")
        return len(records)

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        response = self._supabase.table(self.TABLE).select("*").eq("id", contact_id).execute()
        if not response.data:
            return None
        return Contact(**response.data[0])

    async def list_contacts(self, campaign_id: str, status: Optional[str] = None) -> List[Contact]:
        query = self._supabase.table(self.TABLE).select("*").eq("campaign_id", campaign_id)
        if status:
            query = query.eq("status", status)
        response = query.order("created_at").execute()
        return [Contact(**row) for row in (response.data or [])]

    async def list_pending(self, campaign_id: str) -> List[Contact]:
        return await self.list_contacts(campaign_id, ContactStatus.PENDING.value)

    async def count_by_status(self, campaign_id: str) -> Dict[str, int]:
        response = self._supabase.table(self.TABLE).select("status").eq("campaign_id", campaign_id).execute()

        counts = {status.value: 0 for status in ContactStatus}
        for row in response.data or []:
            status = row.get("status", "unknown")
            counts[status] = counts.get(status, 0) + 1
        return counts

    async def mark_called(self, contact_id: str, run_id: str) -> None:
        self._supabase.table(self.TABLE).update({
            "status": ContactStatus.CALLED.value,
            "agent_run_id": run_id,
            "updated_at": datetime.utcnow().isoformat()
        }).eq("id", contact_id).execute()
        logger.debug(f"Contact {contact_id} marked called (run {run_id})")

    async def mark_failed(self, contact_id: str, run_id: Optional[str] = None) -> None:
        update = {
            "status": ContactStatus.FAILED.value,
            "updated_at": datetime.utcnow().isoformat()
        }
        if run_id:
            update["agent_run_id"] = run_id

        self._supabase.table(self.TABLE).update(update).eq("id", contact_id).execute()
        logger.debug(f"Contact {contact_id} marked failed")
