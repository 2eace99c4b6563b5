"""Common capability set shared by all meter protocols.

The bus talks to meters only through this interface: it asks a meter
to build a request, sends it, and hands the raw response back to the
same meter for validation and decoding.  Request building never does
I/O.

Example:
    >>> from meterpoll.mercury import MercuryMeter
    >>> meter = MercuryMeter(0x4B)
    >>> len(meter.build_test())
    4
"""

from meterpoll.errors import PreconditionError


class Meter:
    """Base class for a meter reachable at one network address.

    Subclasses implement the request builders and response parsers.
    ``build_test`` returns None for protocols without a connectivity
    probe; the bus then skips that step.

    Args:
        address: Network address on the bus (int, 0-255).

    Raises:
        PreconditionError: If *address* is out of range.
    """

    protocol = "generic"

    def __init__(self, address: int):
        """Validate and store the network address."""
        if not isinstance(address, int) or not (0 <= address <= 255):
            raise PreconditionError(
                "address must be in range 0-255, got {!r}".format(address)
            )
        self.address = address

    def __repr__(self) -> str:
        return "{}(address=0x{:02X})".format(type(self).__name__, self.address)

    def build_open(self) -> bytes:
        raise NotImplementedError("build_open")

    def build_close(self) -> bytes:
        raise NotImplementedError("build_close")

    def build_test(self) -> bytes | None:
        """Return a connectivity probe request, or None if unsupported."""
        return None

    def build_read(self, param) -> bytes:
        raise NotImplementedError("build_read")

    def build_energy(self) -> bytes:
        raise NotImplementedError("build_energy")

    def verify(self, response: bytes) -> bool:
        raise NotImplementedError("verify")

    def parse_read(self, param, response: bytes) -> dict:
        raise NotImplementedError("parse_read")

    def parse_energy(self, response: bytes) -> dict:
        raise NotImplementedError("parse_energy")

    def session_opened(self) -> None:
        """Called by the bus after an open request was acknowledged."""

    def session_closed(self) -> None:
        """Called by the bus after the close step, acknowledged or not."""
