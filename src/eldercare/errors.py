"""Error taxonomy surfaced to callers.

Precondition failures (a reminder's status moved on before a transition could
be written) are not errors: transitions return a falsy result instead. Push
delivery failures are reported as booleans by the dispatcher and only logged.
"""


class ElderCareError(Exception):
    """Base class for errors surfaced to callers."""


class ReminderNotFound(ElderCareError):
    def __init__(self, reminder_id: str) -> None:
        super().__init__(f"reminder not found: {reminder_id}")
        self.reminder_id = reminder_id


class InvalidArgument(ElderCareError):
    """Unknown action name or a missing/invalid field on an entry point."""


class HorizonExceeded(ElderCareError):
    """A task was requested further out than the queue's maximum lookahead."""
