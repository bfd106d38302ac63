"""CRMService -- lead and contact mutations that feed the automation engine.

Every mutation persists first and then publishes one `entity.changed` event
per trigger type it implies. The bus waits for its subscribers, so by the
time a method returns, the automations triggered by the change have run and
the returned record is re-read to include their effects.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from core.bus import AsyncIOBus
from core.clock import Clock, SystemClock
from core.errors import EntityConflictError, EntityNotFoundError
from core.models.events import Event, EventTypes
from core.models.pagination import Page, normalize_page
from crm.models import Contact, EmailTemplate, EntityBase, Lead
from crm.repository import EntityRepository

logger = logging.getLogger(__name__)

_COMMON_FIELDS = {"name", "email", "phone", "company", "status", "tags", "notes", "custom_fields", "metadata"}
_LEAD_FIELDS = _COMMON_FIELDS | {"source", "score"}
_CONTACT_FIELDS = _COMMON_FIELDS | {"lead_source", "address"}

# Fields whose changes are reported through their own trigger types
_NOT_FIELD_UPDATES = {"tags", "custom_fields", "metadata"}

_Change = tuple[str, dict]


class CRMService:
    """Create, update, convert and delete leads and contacts.

    Usage:
        crm = CRMService(repo=repo, bus=bus)
        lead = await crm.create_lead("owner_1", {"name": "Ada", "source": "website"})
    """

    def __init__(
        self,
        repo: EntityRepository,
        bus: AsyncIOBus,
        clock: Clock | None = None,
    ) -> None:
        self._repo = repo
        self._bus = bus
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def create_lead(self, owner_id: str, data: dict) -> Lead:
        now = self._clock.now()
        fields = _normalize(Lead, data, _LEAD_FIELDS)
        lead = Lead(**fields, owner_id=owner_id, created_at=now, updated_at=now)
        if lead.status == "qualified":
            lead.qualified_at = now
        self._repo.insert(lead)
        logger.info("Created lead %s for owner %s", lead.id, owner_id)

        await self._publish(lead, [("new_lead", {})])
        return self._reload(lead)

    async def update_lead(self, lead_id: str, updates: dict) -> Lead:
        lead = self.get_lead(lead_id)
        if lead.status == "converted":
            raise EntityConflictError(f"Lead '{lead_id}' is converted and can no longer be updated")

        before = lead.model_copy(deep=True)
        _apply(lead, _normalize(Lead, updates, _LEAD_FIELDS))

        now = self._clock.now()
        triggers: list[_Change] = [("lead_updated", {"fields": _changed_fields(before, lead)})]
        if lead.status != before.status:
            if lead.status == "qualified":
                lead.qualified_at = now
                triggers.append(("lead_qualified", {"previous_status": before.status}))
            elif lead.status == "disqualified":
                lead.disqualified_at = now
                triggers.append(("lead_disqualified", {"previous_status": before.status}))
        triggers.extend(_change_triggers(before, lead))

        self._repo.save(lead)
        await self._publish(lead, triggers)
        return self._reload(lead)

    async def delete_lead(self, lead_id: str) -> None:
        if not self._repo.delete("lead", lead_id):
            raise EntityNotFoundError("lead", lead_id)

    def get_lead(self, lead_id: str) -> Lead:
        lead = self._repo.get("lead", lead_id)
        if lead is None:
            raise EntityNotFoundError("lead", lead_id)
        return lead

    def list_leads(
        self,
        owner_id: str,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Lead]:
        return _paginate(Page[Lead], self._repo.list_for_owner("lead", owner_id), status, page, limit)

    async def convert_lead(self, lead_id: str) -> Contact:
        """Turn a lead into a contact, merging into one with the same email if it exists."""
        lead = self.get_lead(lead_id)
        if lead.status == "converted":
            raise EntityConflictError(f"Lead '{lead_id}' is already converted")

        now = self._clock.now()
        existing = self._repo.find_contact_by_email(lead.owner_id, lead.email)
        if existing is not None:
            before = existing.model_copy(deep=True)
            existing.lead_source = lead.source
            existing.add_tags(lead.tags)
            if lead.notes:
                existing.notes = f"{existing.notes}\n\n{lead.notes}" if existing.notes else lead.notes
            existing.custom_fields = {**existing.custom_fields, **lead.custom_fields}
            contact = existing
            self._repo.save(contact)
            triggers: list[_Change] = [
                ("contact_updated", {"fields": _changed_fields(before, contact), "converted_from": lead.id}),
                *_change_triggers(before, contact),
            ]
            logger.info("Merged lead %s into existing contact %s", lead.id, contact.id)
        else:
            contact = Contact(
                owner_id=lead.owner_id,
                name=lead.name,
                email=lead.email,
                phone=lead.phone,
                company=lead.company,
                lead_source=lead.source,
                tags=list(lead.tags),
                notes=lead.notes,
                custom_fields=dict(lead.custom_fields),
                status="active",
                created_at=now,
                updated_at=now,
            )
            self._repo.insert(contact)
            triggers = [("new_contact", {"converted_from": lead.id})]
            logger.info("Converted lead %s to new contact %s", lead.id, contact.id)

        lead.status = "converted"
        lead.converted_at = now
        lead.converted_contact_id = contact.id
        self._repo.save(lead)

        await self._publish(contact, triggers)
        return self._reload(contact)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def create_contact(self, owner_id: str, data: dict) -> Contact:
        fields = _normalize(Contact, data, _CONTACT_FIELDS)
        email = fields.get("email", "")
        if email and self._repo.find_contact_by_email(owner_id, email) is not None:
            raise EntityConflictError(f"Contact with email '{email}' already exists")

        now = self._clock.now()
        contact = Contact(**fields, owner_id=owner_id, created_at=now, updated_at=now)
        self._repo.insert(contact)
        logger.info("Created contact %s for owner %s", contact.id, owner_id)

        await self._publish(contact, [("new_contact", {})])
        return self._reload(contact)

    async def update_contact(self, contact_id: str, updates: dict) -> Contact:
        contact = self.get_contact(contact_id)
        before = contact.model_copy(deep=True)
        _apply(contact, _normalize(Contact, updates, _CONTACT_FIELDS))

        triggers: list[_Change] = [
            ("contact_updated", {"fields": _changed_fields(before, contact)}),
            *_change_triggers(before, contact),
        ]
        self._repo.save(contact)
        await self._publish(contact, triggers)
        return self._reload(contact)

    async def record_purchase(
        self,
        contact_id: str,
        amount: float,
        metadata: dict | None = None,
    ) -> Contact:
        if amount <= 0:
            raise ValueError(f"Purchase amount must be positive, got {amount}")

        contact = self.get_contact(contact_id)
        contact.record_purchase(amount, self._clock.now(), metadata)
        self._repo.save(contact)

        await self._publish(contact, [(
            "contact_purchase",
            {
                "amount": amount,
                "total_spent": contact.total_spent,
                "total_purchases": contact.total_purchases,
            },
        )])
        return self._reload(contact)

    async def delete_contact(self, contact_id: str) -> None:
        if not self._repo.delete("contact", contact_id):
            raise EntityNotFoundError("contact", contact_id)

    def get_contact(self, contact_id: str) -> Contact:
        contact = self._repo.get("contact", contact_id)
        if contact is None:
            raise EntityNotFoundError("contact", contact_id)
        return contact

    def list_contacts(
        self,
        owner_id: str,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Contact]:
        return _paginate(Page[Contact], self._repo.list_for_owner("contact", owner_id), status, page, limit)

    # ------------------------------------------------------------------
    # Email templates
    # ------------------------------------------------------------------

    def create_template(self, owner_id: str, data: dict) -> EmailTemplate:
        unknown = set(data) - {"name", "subject", "body"}
        if unknown:
            raise ValueError(f"Unknown template fields: {', '.join(sorted(unknown))}")
        template = EmailTemplate(**data, owner_id=owner_id, created_at=self._clock.now())
        self._repo.save_template(template)
        logger.info("Created email template %s for owner %s", template.id, owner_id)
        return template

    def list_templates(self, owner_id: str) -> list[EmailTemplate]:
        return sorted(self._repo.list_templates(owner_id), key=lambda t: (t.created_at, t.id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _publish(self, entity: Lead | Contact, triggers: list[_Change]) -> None:
        root: Event | None = None
        for trigger_type, change in triggers:
            payload = {
                "entity_type": entity.entity_type,
                "trigger_type": trigger_type,
                "entity_id": entity.id,
                "owner_id": entity.owner_id,
                "change": change,
            }
            # One mutation, one correlation chain
            if root is None:
                event = root = Event(type=EventTypes.ENTITY_CHANGED, source="crm", payload=payload)
            else:
                event = root.derive(EventTypes.ENTITY_CHANGED, "crm", payload)
            failed = await self._bus.publish(event)
            if failed:
                logger.warning(
                    "%d subscriber(s) failed on %s for %s %s",
                    failed, trigger_type, entity.entity_type, entity.id,
                )

    def _reload(self, entity: Lead | Contact) -> Any:
        # Deleted by an automation in the meantime: hand back what we saved
        return self._repo.get(entity.entity_type, entity.id) or entity


def _normalize(model_class: type[EntityBase], data: dict, allowed: set[str]) -> dict:
    """Map snake/camelCase input keys to field names, rejecting everything not allowed."""
    fields: dict[str, Any] = {}
    for key, value in data.items():
        name = model_class.field_for(key)
        if name is None or name not in allowed:
            raise ValueError(f"Field {key!r} cannot be set on a {model_class.__name__.lower()}")
        fields[name] = value
    return fields


def _apply(entity: EntityBase, fields: dict) -> None:
    for name, value in fields.items():
        if name in ("custom_fields", "metadata") and isinstance(value, dict):
            value = {**getattr(entity, name), **value}
        setattr(entity, name, value)


def _changed_fields(before: EntityBase, after: EntityBase) -> list[str]:
    return [
        name for name in type(after).model_fields
        if name not in ("updated_at", "activity") and getattr(before, name) != getattr(after, name)
    ]


def _change_triggers(before: EntityBase, after: EntityBase) -> list[_Change]:
    """field_updated / tag_added / tag_removed triggers describing one edit."""
    triggers: list[_Change] = []

    for name in _changed_fields(before, after):
        if name in _NOT_FIELD_UPDATES:
            continue
        triggers.append(("field_updated", {
            "field": name,
            "old_value": _plain(getattr(before, name)),
            "new_value": _plain(getattr(after, name)),
        }))

    old_custom, new_custom = before.custom_fields, after.custom_fields
    for key in sorted(set(old_custom) | set(new_custom)):
        if old_custom.get(key) != new_custom.get(key):
            triggers.append(("field_updated", {
                "field": f"custom_fields.{key}",
                "old_value": _plain(old_custom.get(key)),
                "new_value": _plain(new_custom.get(key)),
            }))

    for tag in after.tags:
        if tag not in before.tags:
            triggers.append(("tag_added", {"tag": tag}))
    for tag in before.tags:
        if tag not in after.tags:
            triggers.append(("tag_removed", {"tag": tag}))
    return triggers


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _paginate(page_type: type[Page], entities: list, status: str | None, page: int, limit: int) -> Page:
    if status is not None:
        entities = [e for e in entities if e.status == status]
    entities = sorted(entities, key=lambda e: (e.created_at, e.id), reverse=True)
    page, limit, offset = normalize_page(page, limit)
    return page_type(items=entities[offset:offset + limit], total=len(entities), page=page, limit=limit)
