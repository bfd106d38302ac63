"""EntityRepository -- leads, contacts and email templates as JSON files.

Layout under the home directory:
    leads/<lead_id>.json
    contacts/<contact_id>.json
    email_templates/<template_id>.json
"""

from __future__ import annotations

import logging

from core.clock import Clock, SystemClock
from core.data.store import Store
from crm.models import ENTITY_CLASSES, Contact, EmailTemplate, Lead

logger = logging.getLogger(__name__)

_ENTITY_DIRS = {"lead": "leads", "contact": "contacts"}
_TEMPLATE_DIR = "email_templates"


def _entity_dir(entity_type: str) -> str:
    try:
        return _ENTITY_DIRS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type!r}") from None


class EntityRepository:
    """File-backed implementation of the EntityStore protocol."""

    def __init__(self, store: Store, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    def get(self, entity_type: str, entity_id: str) -> Lead | Contact | None:
        model_class = ENTITY_CLASSES.get(entity_type)
        if model_class is None:
            return None
        return self._store.read_json(_entity_dir(entity_type), f"{entity_id}.json", model_class)

    def save(self, entity: Lead | Contact) -> Lead | Contact:
        """Persist the entity, stamping updated_at."""
        entity.updated_at = self._clock.now()
        self._store.write_json(_entity_dir(entity.entity_type), f"{entity.id}.json", entity)
        return entity

    def insert(self, entity: Lead | Contact) -> Lead | Contact:
        """Persist a new entity as-is (created_at == updated_at)."""
        self._store.write_json(_entity_dir(entity.entity_type), f"{entity.id}.json", entity)
        return entity

    def delete(self, entity_type: str, entity_id: str) -> bool:
        deleted = self._store.delete_file(_entity_dir(entity_type), f"{entity_id}.json")
        if deleted:
            logger.info("Deleted %s %s", entity_type, entity_id)
        return deleted

    def list_for_owner(self, entity_type: str, owner_id: str) -> list[Lead | Contact]:
        """All entities of one type for an owner, oldest first."""
        model_class = ENTITY_CLASSES[entity_type]
        entities = [
            e for e in self._store.list_json(_entity_dir(entity_type), model_class)
            if e.owner_id == owner_id
        ]
        return sorted(entities, key=lambda e: (e.created_at, e.id))

    def find_contact_by_email(self, owner_id: str, email: str) -> Contact | None:
        if not email:
            return None
        wanted = email.strip().lower()
        for contact in self.list_for_owner("contact", owner_id):
            if contact.email.strip().lower() == wanted:
                return contact
        return None

    # -- Email templates --

    def get_template(self, template_id: str) -> EmailTemplate | None:
        return self._store.read_json(_TEMPLATE_DIR, f"{template_id}.json", EmailTemplate)

    def save_template(self, template: EmailTemplate) -> EmailTemplate:
        self._store.write_json(_TEMPLATE_DIR, f"{template.id}.json", template)
        return template

    def list_templates(self, owner_id: str) -> list[EmailTemplate]:
        return [
            t for t in self._store.list_json(_TEMPLATE_DIR, EmailTemplate)
            if t.owner_id == owner_id
        ]
