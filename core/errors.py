"""Domain exceptions raised by the stores, dispatcher and automation runtime."""


class TaskNotFoundError(Exception):
    """Raised when a task identifier does not exist in the task store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id '{task_id}' was not found.")
        self.task_id = task_id


class TaskInProgressError(Exception):
    """Raised when deleting a task that a dispatcher has already claimed."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' is in progress and cannot be deleted.")
        self.task_id = task_id


class InvalidTransitionError(Exception):
    """Raised when a task status change would leave the allowed state machine."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Task '{task_id}' cannot move from '{current}' to '{target}'."
        )
        self.task_id = task_id
        self.current = current
        self.target = target


class AutomationNotFoundError(Exception):
    """Raised when an automation identifier does not exist."""

    def __init__(self, automation_id: str) -> None:
        super().__init__(f"Automation with id '{automation_id}' was not found.")
        self.automation_id = automation_id


class EntityNotFoundError(Exception):
    """Raised when a lead or contact cannot be loaded."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type.capitalize()} with id '{entity_id}' was not found.")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ActionError(Exception):
    """Raised by the action executor when a single action cannot be applied."""


class EntityConflictError(Exception):
    """Raised when a CRM mutation clashes with existing state.

    Examples: creating a contact whose email is already taken, or converting
    a lead that was converted before.
    """
