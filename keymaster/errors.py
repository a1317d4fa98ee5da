"""Exception hierarchy shared by the connection engine."""


class KeymasterError(Exception):
    """Base class for every error raised by keymaster."""


class ConfigError(KeymasterError):
    """Configuration is missing, unresolvable or malformed."""


class TransportError(KeymasterError):
    """A hop's session could not be established or stopped working.

    ``clean`` is set when the session closed without a recorded failure.
    """

    def __init__(self, message: str, *, clean: bool = False):
        super().__init__(message)
        self.clean = clean


class ForwardError(TransportError):
    """A local forward failed to open its channel through the hop."""
