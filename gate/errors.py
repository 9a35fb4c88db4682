class GateError(Exception):
    """Base class for errors raised by gate administration and storage faults."""


class NotFoundError(GateError):
    """The referenced key or organization does not exist."""


class InvalidTransitionError(GateError):
    """A lifecycle action is not allowed from the target's current state."""

    def __init__(self, action: str, current: str):
        self.action = action
        self.current = current
        super().__init__(f"Cannot {action} from state '{current}'")


class CorruptRecordError(GateError):
    """Stored state the gate cannot interpret (dangling reference, unknown status)."""
