"""Contact store: attribute/tag reads and single-field writes by contact id.

The engine never holds a lock on a contact across steps. Every call here is
one short-lived session, so concurrent external edits interleave with
last-write-wins semantics.
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..engine.context import ContactSnapshot
from ..errors import ContactNotFoundError, ContactStoreError
from ..models.contact import Contact, ContactTag

# Writable top-level attributes; anything else lands in custom_fields.
STANDARD_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "company_name",
    "source",
    "dnd",
)


class ContactStore(Protocol):
    async def get_snapshot(
        self, tenant_id: uuid.UUID, contact_id: uuid.UUID, trigger: dict | None = None
    ) -> ContactSnapshot: ...

    async def exists(self, tenant_id: uuid.UUID, contact_id: uuid.UUID) -> bool: ...

    async def update_field(
        self, tenant_id: uuid.UUID, contact_id: uuid.UUID, field: str, value: Any
    ) -> None: ...

    async def add_tag(self, tenant_id: uuid.UUID, contact_id: uuid.UUID, tag: str) -> None: ...

    async def remove_tag(self, tenant_id: uuid.UUID, contact_id: uuid.UUID, tag: str) -> None: ...


def contact_to_dict(contact: Contact) -> dict:
    return {
        "id": str(contact.id),
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "full_name": contact.full_name,
        "email": contact.email,
        "phone": contact.phone,
        "company_name": contact.company_name,
        "source": contact.source,
        "dnd": contact.dnd,
        "tags": [t.name for t in contact.tags],
        "fields": dict(contact.custom_fields or {}),
    }


class SqlContactStore:
    """ContactStore backed by the ``contact`` / ``contact_tag`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _load(self, db: AsyncSession, tenant_id: uuid.UUID, contact_id: uuid.UUID) -> Contact:
        stmt = select(Contact).where(Contact.id == contact_id, Contact.tenant_id == tenant_id)
        contact = (await db.execute(stmt)).scalar_one_or_none()
        if contact is None:
            raise ContactNotFoundError(f"Contact {contact_id} not found")
        return contact

    async def get_snapshot(
        self, tenant_id: uuid.UUID, contact_id: uuid.UUID, trigger: dict | None = None
    ) -> ContactSnapshot:
        try:
            async with self._session_factory() as db:
                contact = await self._load(db, tenant_id, contact_id)
                return ContactSnapshot(contact_to_dict(contact), trigger=trigger)
        except SQLAlchemyError as exc:
            raise ContactStoreError(f"Contact store unavailable: {exc}") from exc

    async def exists(self, tenant_id: uuid.UUID, contact_id: uuid.UUID) -> bool:
        try:
            async with self._session_factory() as db:
                stmt = select(Contact.id).where(
                    Contact.id == contact_id, Contact.tenant_id == tenant_id
                )
                return (await db.execute(stmt)).scalar_one_or_none() is not None
        except SQLAlchemyError as exc:
            raise ContactStoreError(f"Contact store unavailable: {exc}") from exc

    async def update_field(
        self, tenant_id: uuid.UUID, contact_id: uuid.UUID, field: str, value: Any
    ) -> None:
        try:
            async with self._session_factory() as db:
                contact = await self._load(db, tenant_id, contact_id)
                name = field.removeprefix("fields.")
                if field in STANDARD_FIELDS:
                    setattr(contact, field, value)
                else:
                    contact.custom_fields = {**(contact.custom_fields or {}), name: value}
                await db.commit()
        except SQLAlchemyError as exc:
            raise ContactStoreError(f"Contact store unavailable: {exc}") from exc

    async def add_tag(self, tenant_id: uuid.UUID, contact_id: uuid.UUID, tag: str) -> None:
        try:
            async with self._session_factory() as db:
                contact = await self._load(db, tenant_id, contact_id)
                if any(t.name == tag for t in contact.tags):
                    return
                db.add(ContactTag(contact_id=contact.id, name=tag))
                try:
                    await db.commit()
                except IntegrityError:
                    # Added concurrently; the tag is present either way.
                    await db.rollback()
        except SQLAlchemyError as exc:
            raise ContactStoreError(f"Contact store unavailable: {exc}") from exc

    async def remove_tag(self, tenant_id: uuid.UUID, contact_id: uuid.UUID, tag: str) -> None:
        try:
            async with self._session_factory() as db:
                contact = await self._load(db, tenant_id, contact_id)
                await db.execute(
                    delete(ContactTag).where(
                        ContactTag.contact_id == contact.id, ContactTag.name == tag
                    )
                )
                await db.commit()
        except SQLAlchemyError as exc:
            raise ContactStoreError(f"Contact store unavailable: {exc}") from exc
