"""Exception types raised by the segmentation session."""


class PromptSegError(Exception):
    pass


class BackendError(PromptSegError):
    """The inference backend failed to encode or decode."""


class SessionBusyError(PromptSegError):
    """A command would overlap a request that is still outstanding."""


class InvalidStateError(PromptSegError):
    """The session is not in a state that accepts the command."""
