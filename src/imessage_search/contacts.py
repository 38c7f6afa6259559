"""Contact lookups: handle identifier ↔ display name and contact groups.

chat.db only knows raw handles ("+15551234567", "me@example.com"). The
AddressBook databases map those handles to people. One person with
several phone numbers and emails forms a *contact group*; searching "by
contact" filters on every handle in the group.

Usage:
    directory = ContactDirectory()
    directory.load_address_book(get_contacts_path())
    directory.display_name("+15551234567")      # → "Jane Appleseed"
    directory.identifiers_for(["main-42"])      # → {"+15551234567", ...}
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

ADDRESS_BOOK_FILENAME = "AddressBook-v22.abcddb"

_NAME_EXPR = """TRIM(COALESCE(r.ZFIRSTNAME || ' ' || r.ZLASTNAME, r.ZFIRSTNAME,
    r.ZLASTNAME, r.ZORGANIZATION, r.ZNICKNAME))"""

_PHONE_SQL = f"""
    SELECT p.ZFULLNUMBER AS phone, r.Z_PK AS record_id, {_NAME_EXPR} AS name
    FROM ZABCDPHONENUMBER p
    JOIN ZABCDRECORD r ON p.ZOWNER = r.Z_PK
    WHERE p.ZFULLNUMBER IS NOT NULL
"""

_EMAIL_SQL = f"""
    SELECT e.ZADDRESS AS email, r.Z_PK AS record_id, {_NAME_EXPR} AS name
    FROM ZABCDEMAILADDRESS e
    JOIN ZABCDRECORD r ON e.ZOWNER = r.Z_PK
    WHERE e.ZADDRESS IS NOT NULL
"""

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None) -> str:
    """
    Normalize a phone number to its last 10 digits.

    Returns:
        10-digit string, or "" if the input has fewer than 10 digits
    """
    if not phone:
        return ""
    digits = _NON_DIGITS.sub("", phone)

    # Strip leading 1 for US numbers
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]

    if len(digits) >= 10:
        return digits[-10:]
    return ""


def normalize_email(email: str | None) -> str:
    if not email:
        return ""
    return email.strip().lower()


@dataclass
class ContactGroup:
    """All handles belonging to one AddressBook record."""

    name: str
    identifiers: set[str] = field(default_factory=set)


class ContactDirectory:
    """Thread-safe handle → name lookup with contact grouping."""

    def __init__(self) -> None:
        self._names: dict[str, str] = {}
        self._ids: dict[str, str] = {}
        self._groups: dict[str, ContactGroup] = {}
        self._lock = threading.Lock()
        self.loaded = False

    def add_contact(self, identifier: str, name: str, contact_id: str) -> None:
        """Register one handle for a contact."""
        if not identifier:
            return
        with self._lock:
            self._names[identifier] = name
            self._ids[identifier] = contact_id
            group = self._groups.setdefault(contact_id, ContactGroup(name=name))
            group.identifiers.add(identifier)

    def _lookup(self, table: dict[str, str], identifier: str) -> str | None:
        if identifier in table:
            return table[identifier]

        phone = normalize_phone(identifier)
        if phone:
            for candidate in (phone, f"+1{phone}"):
                if candidate in table:
                    return table[candidate]

        email = normalize_email(identifier)
        if email and email in table:
            return table[email]

        return None

    def display_name(self, identifier: str | None) -> str:
        """
        Resolve a handle to a display name.

        Never raises. Falls back to a formatted phone number, then to the
        identifier itself.
        """
        if not identifier:
            return "Unknown"

        with self._lock:
            name = self._lookup(self._names, identifier)
        if name:
            return name

        phone = normalize_phone(identifier)
        if len(phone) == 10:
            return f"({phone[:3]}) {phone[3:6]}-{phone[6:]}"

        return identifier

    def contact_id(self, identifier: str | None) -> str | None:
        """Return the contact group id for a handle, if known."""
        if not identifier:
            return None
        with self._lock:
            return self._lookup(self._ids, identifier)

    def identifiers_for(self, contact_ids: Iterable[str]) -> set[str]:
        """Expand contact group ids to every raw handle they contain."""
        identifiers: set[str] = set()
        with self._lock:
            for contact_id in contact_ids:
                group = self._groups.get(contact_id)
                if group:
                    identifiers.update(group.identifiers)
        return identifiers

    @property
    def groups(self) -> dict[str, ContactGroup]:
        with self._lock:
            return dict(self._groups)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "names": len(self._names),
                "ids": len(self._ids),
                "groups": len(self._groups),
            }

    def clear(self) -> None:
        with self._lock:
            self._names.clear()
            self._ids.clear()
            self._groups.clear()
        self.loaded = False

    # ─────────────────────────────────────────────────────────────────
    # AddressBook loading
    # ─────────────────────────────────────────────────────────────────

    def load_address_book(self, base_path: Path) -> dict[str, int]:
        """
        Load every AddressBook database under base_path.

        A database that cannot be read is logged and skipped.

        Returns:
            Counts of phone numbers and emails loaded
        """
        databases = find_address_books(base_path)
        logger.info("Found %d AddressBook databases", len(databases))

        phones = emails = 0
        for source, db_path in databases:
            loaded_phones, loaded_emails = self._load_database(source, db_path)
            phones += loaded_phones
            emails += loaded_emails

        self.loaded = True
        logger.info(
            "Loaded %d phone numbers, %d emails (%d contact groups)",
            phones,
            emails,
            len(self._groups),
        )
        return {"phones": phones, "emails": emails}

    def _load_database(self, source: str, db_path: Path) -> tuple[int, int]:
        phones = emails = 0
        try:
            conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        except sqlite3.Error as e:
            logger.warning("Failed to open contacts %s: %s", db_path, e)
            return 0, 0

        conn.row_factory = sqlite3.Row
        try:
            for row in conn.execute(_PHONE_SQL):
                name = (row["name"] or "").strip()
                if not name:
                    continue
                contact_id = f"{source}-{row['record_id']}"
                self.add_contact(row["phone"], name, contact_id)
                normalized = normalize_phone(row["phone"])
                if normalized:
                    self.add_contact(normalized, name, contact_id)
                    self.add_contact(f"+1{normalized}", name, contact_id)
                phones += 1

            for row in conn.execute(_EMAIL_SQL):
                name = (row["name"] or "").strip()
                if not name:
                    continue
                contact_id = f"{source}-{row['record_id']}"
                self.add_contact(row["email"], name, contact_id)
                self.add_contact(normalize_email(row["email"]), name, contact_id)
                emails += 1
        except sqlite3.Error as e:
            logger.warning("Failed to load contacts from %s: %s", db_path, e)
        finally:
            conn.close()

        return phones, emails


def find_address_books(base_path: Path) -> list[tuple[str, Path]]:
    """
    Find the main and per-source AddressBook databases.

    Returns:
        List of (source_label, path); the main database is labelled "main"
    """
    databases: list[tuple[str, Path]] = []

    main_db = base_path / ADDRESS_BOOK_FILENAME
    if main_db.exists():
        databases.append(("main", main_db))

    sources_dir = base_path / "Sources"
    try:
        sources = sorted(p for p in sources_dir.iterdir() if p.is_dir())
    except OSError:
        sources = []

    for source in sources:
        source_db = source / ADDRESS_BOOK_FILENAME
        if source_db.exists():
            databases.append((source.name, source_db))

    return databases
