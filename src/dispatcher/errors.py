"""Exception taxonomy shared by the delegation, suggestion and workflow services."""


class DispatcherError(Exception):
    """Base class for all dispatcher errors."""


class NotFoundError(DispatcherError, LookupError):
    """A task, delegation, suggestion or workflow id is unknown."""

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class InvalidStateError(DispatcherError, ValueError):
    """A lifecycle transition was requested from a status that does not allow it."""


class WorkflowValidationError(DispatcherError, ValueError):
    """A workflow definition is malformed."""


class GatewayError(DispatcherError):
    """The generation gateway failed: network, non-2xx status or unusable body."""


class GatewayTimeout(GatewayError):
    """The generation gateway did not answer within the allotted time."""
