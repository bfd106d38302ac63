"""Lead and Contact records -- the entities automations react to and act on.

Both variants share one base with typed path access. A path is either a
top-level field (``source``) or one level into a mapping or sub-model
(``custom_fields.industry``, ``address.city``). Segments may be given in
snake_case or camelCase. Anything else resolves to MISSING instead of raising.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Missing:
    """Sentinel for a path that does not resolve to a value."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

LeadSource = Literal["website", "social", "referral", "email", "ad", "other"]
ActivityType = Literal["note", "email", "task", "call", "meeting", "purchase", "other"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _PathModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    @classmethod
    def field_for(cls, segment: str) -> str | None:
        """Map a path segment (snake_case or camelCase) to a field name."""
        if segment in cls.model_fields:
            return segment
        for name in cls.model_fields:
            if to_camel(name) == segment:
                return name
        return None


class Activity(_PathModel):
    id: str = Field(default_factory=lambda: f"act_{uuid4().hex[:12]}")
    type: ActivityType
    description: str
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: dict = Field(default_factory=dict)


class Address(_PathModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None


class EntityBase(_PathModel):
    """Fields and path access shared by leads and contacts."""

    PROTECTED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"id", "owner_id", "kind", "created_at"}
    )

    owner_id: str
    name: str
    email: str = ""
    phone: str | None = None
    company: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    activity: list[Activity] = Field(default_factory=list)
    custom_fields: dict = Field(default_factory=dict)
    metadata: dict = Field(default_factory=dict)
    last_activity_date: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def entity_type(self) -> str:
        return self.kind  # type: ignore[attr-defined]

    def get_path(self, path: str) -> Any:
        """Resolve a dotted path, returning MISSING when it does not exist."""
        parts = _split_path(path)
        if parts is None:
            return MISSING

        name = self.field_for(parts[0])
        if name is None:
            return MISSING
        value = getattr(self, name)
        if len(parts) == 1:
            return value

        child = parts[1]
        if isinstance(value, dict):
            return value.get(child, MISSING)
        if isinstance(value, _PathModel):
            child_name = value.field_for(child)
            return getattr(value, child_name) if child_name else MISSING
        return MISSING

    def set_path(self, path: str, value: Any) -> None:
        """Assign through a dotted path. Raises ValueError on invalid targets."""
        parts = _split_path(path)
        if parts is None:
            raise ValueError(f"Invalid field path: {path!r}")

        name = self.field_for(parts[0])
        if name is None:
            raise ValueError(f"Unknown field {parts[0]!r} on {self.entity_type}")
        if name in self.PROTECTED_FIELDS:
            raise ValueError(f"Field {name!r} cannot be updated")

        if len(parts) == 1:
            setattr(self, name, value)
            return

        child = parts[1]
        current = getattr(self, name)
        if isinstance(current, dict):
            setattr(self, name, {**current, child: value})
            return

        annotation = type(self).model_fields[name].annotation
        if current is None and _is_submodel(annotation):
            current = _submodel_type(annotation)()
        if isinstance(current, _PathModel):
            child_name = current.field_for(child)
            if child_name is None:
                raise ValueError(f"Unknown field {path!r} on {self.entity_type}")
            setattr(current, child_name, value)
            setattr(self, name, current)
            return
        raise ValueError(f"Field {name!r} on {self.entity_type} has no nested fields")

    def add_tags(self, tags: list[str]) -> list[str]:
        """Union tags into the entity, returning the ones that were new."""
        added = [t for t in dict.fromkeys(tags) if t not in self.tags]
        if added:
            self.tags = [*self.tags, *added]
        return added

    def remove_tags(self, tags: list[str]) -> list[str]:
        """Remove tags, returning the ones that were present."""
        removed = [t for t in self.tags if t in set(tags)]
        if removed:
            self.tags = [t for t in self.tags if t not in set(tags)]
        return removed

    def add_activity(
        self,
        type: str,
        description: str,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> Activity:
        now = now or _utcnow()
        entry = Activity(
            type=type,
            description=description,
            metadata=metadata or {},
            created_at=now,
        )
        self.activity = [*self.activity, entry]
        self.last_activity_date = now
        return entry


class Lead(EntityBase):
    kind: Literal["lead"] = "lead"
    id: str = Field(default_factory=lambda: f"lead_{uuid4().hex[:12]}")
    status: Literal["new", "qualified", "disqualified", "converted"] = "new"
    source: LeadSource = "website"
    score: float = 0
    qualified_at: datetime | None = None
    disqualified_at: datetime | None = None
    converted_at: datetime | None = None
    converted_contact_id: str | None = None


class Contact(EntityBase):
    kind: Literal["contact"] = "contact"
    id: str = Field(default_factory=lambda: f"contact_{uuid4().hex[:12]}")
    status: Literal["active", "inactive", "customer", "prospect"] = "active"
    lead_source: LeadSource = "website"
    address: Address | None = None
    total_spent: float = 0
    total_purchases: int = 0
    customer_since: datetime | None = None
    last_purchase_at: datetime | None = None

    def record_purchase(self, amount: float, now: datetime, metadata: dict | None = None) -> Activity:
        """Add a purchase to the running totals; the first one makes a customer."""
        self.total_purchases += 1
        self.total_spent = round(self.total_spent + amount, 2)
        self.last_purchase_at = now
        if self.status != "customer":
            self.status = "customer"
            self.customer_since = now
        return self.add_activity(
            "purchase",
            f"Purchase of ${amount:.2f}",
            metadata={"amount": amount, "purchase_number": self.total_purchases, **(metadata or {})},
            now=now,
        )


ENTITY_CLASSES: dict[str, type[EntityBase]] = {"lead": Lead, "contact": Contact}


def _split_path(path: str) -> list[str] | None:
    if not isinstance(path, str):
        return None
    parts = path.strip().split(".")
    if len(parts) > 2 or any(not p for p in parts):
        return None
    return parts


def _is_submodel(annotation: Any) -> bool:
    return _submodel_type(annotation) is not None


def _submodel_type(annotation: Any) -> type[_PathModel] | None:
    for candidate in getattr(annotation, "__args__", (annotation,)):
        if isinstance(candidate, type) and issubclass(candidate, _PathModel):
            return candidate
    return None


class EmailTemplate(_PathModel):
    """A stored email used by send_email actions.

    Subject and body may reference entity fields as {{name}} or {{custom_fields.plan}}.
    """

    id: str = Field(default_factory=lambda: f"tmpl_{uuid4().hex[:12]}")
    owner_id: str
    name: str
    subject: str
    body: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
