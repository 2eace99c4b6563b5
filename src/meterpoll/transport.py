"""Events posted by transports to the bus.

A transport is any object with:

- ``connect(post)``: start connecting; call ``post(event)`` for every
  ``TransportEvent`` from then on (from any thread).
- ``write(data)``: transmit bytes; raise ``OSError`` on failure.
- ``close()``: release the link.

Each ``data`` event carries one whole response.  The serial transport
ends a response when the line goes quiet for the inter-frame gap; the
bus does not reassemble responses split across events.

Example:
    >>> from meterpoll.transport import TransportEvent, DATA
    >>> TransportEvent(DATA, b"\\x00\\x00\\x01\\xb0").kind
    'data'
"""

from dataclasses import dataclass

CONNECTED = "connected"
DATA = "data"
ERROR = "error"
DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class TransportEvent:
    """One notification from a transport.

    ``payload`` is the received bytes for ``data`` and the exception
    for ``error``; None otherwise.
    """

    kind: str
    payload: object = None
