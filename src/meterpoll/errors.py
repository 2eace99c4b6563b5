"""Exception hierarchy for meter polling.

Leaf protocol operations raise these; the bus records them per device
instead of letting one meter's failure stop the cycle.
"""


class MeterError(Exception):
    """Base class for all meterpoll errors."""


class PreconditionError(MeterError, ValueError):
    """A request cannot be built from the given arguments.

    Malformed secret, malformed OBIS code, unsupported parameter code,
    address out of range.  Never retried.
    """


class FrameValidationError(MeterError, ValueError):
    """A response frame failed structural validation or decoding."""


class TransportTimeoutError(MeterError, TimeoutError):
    """No response arrived within the response timeout."""


class ExchangeError(MeterError):
    """A request/response exchange failed after all retry attempts."""

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


class ConnectionStageError(MeterError):
    """Opening or testing the connection to a meter failed."""


class ParameterStageError(MeterError):
    """Reading a single parameter (or the energy registers) failed."""

    def __init__(self, context, message: str):
        self.context = context
        super().__init__(message)


class DuplicateAddressError(MeterError, KeyError):
    """A meter is already registered at this network address."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
