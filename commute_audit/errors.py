"""Exception hierarchy for stage-aborting conditions.

Provider and network failures never surface as these; they are turned into
per-item failure markers by the component that made the call.
"""


class CommuteAuditError(Exception):
    """Base exception for all commute_audit errors."""


class ConfigurationError(CommuteAuditError):
    """A required setting or credential is missing or invalid."""


class InputError(CommuteAuditError):
    """The input data is empty or structurally unusable."""


class InvalidTransitionError(CommuteAuditError):
    """A stage transition that the linear pipeline does not allow."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move from stage '{current}' to '{requested}'")
