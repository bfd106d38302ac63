"""Core protocols -- the seams between the engine and its collaborators.

The dispatcher and the automation runtime import these protocols; concrete
implementations live in plugins/ and crm/ and are wired in main.py.

All protocols use Python's structural subtyping (typing.Protocol):
if your class has the right methods, it implements the protocol.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from core.models.tasks import TaskResult

if TYPE_CHECKING:
    from crm.models import Contact, EmailTemplate, Lead


# ---------------------------------------------------------------------------
# 1. TaskHandler -- execute one queued task
# ---------------------------------------------------------------------------

@runtime_checkable
class TaskHandler(Protocol):
    """Executes tasks of one type.

    The dispatcher looks handlers up by task type in the registry. Business
    failures are reported with TaskResult(success=False); raising is
    reserved for programming errors and marks the task failed.
    """

    @property
    def name(self) -> str:
        """The task type this handler serves, e.g. 'content-generation'."""
        ...

    async def run(self, owner_id: str, payload: dict) -> TaskResult:
        """Execute the task for the given owner."""
        ...


# ---------------------------------------------------------------------------
# 2. EntityStore -- load and save leads/contacts
# ---------------------------------------------------------------------------

@runtime_checkable
class EntityStore(Protocol):
    """Persistence for CRM records. Default implementation: EntityRepository."""

    def get(self, entity_type: str, entity_id: str) -> Lead | Contact | None:
        ...

    def save(self, entity: Lead | Contact) -> Lead | Contact:
        ...

    def list_for_owner(self, entity_type: str, owner_id: str) -> list[Lead | Contact]:
        ...

    def get_template(self, template_id: str) -> EmailTemplate | None:
        ...


# ---------------------------------------------------------------------------
# 3. Action delegates -- side effects the action executor does not own
# ---------------------------------------------------------------------------

@runtime_checkable
class EmailSender(Protocol):
    """Delivers one rendered email."""

    @property
    def name(self) -> str:
        ...

    async def send(self, owner_id: str, to: str, subject: str, body: str, metadata: dict) -> None:
        """Send the email. Raise on delivery failure."""
        ...


@runtime_checkable
class WebhookClient(Protocol):
    """Calls an external HTTP endpoint on behalf of a webhook action."""

    @property
    def name(self) -> str:
        ...

    async def send(self, params: dict, entity: dict) -> int:
        """Deliver the action params (unmodified) with the entity snapshot.

        Returns the HTTP status code. Raise on transport errors or non-2xx.
        """
        ...


@runtime_checkable
class LeadConverter(Protocol):
    """Turns a lead into a contact."""

    async def convert_lead(self, lead_id: str) -> Contact:
        ...
