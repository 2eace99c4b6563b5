"""TCP transport for meters behind a serial-to-Ethernet gateway.

The gateway forwards bytes between a TCP socket and the RS-485 line,
so the meter frames travel unchanged.  Connecting and reading happen
on a background thread; each ``recv()`` chunk becomes one ``data``
event.

Example:
    >>> from meterpoll.tcp_transport import TcpTransport
    >>> transport = TcpTransport("192.168.1.100", 4001)
    >>> bus = MeterBus(transport, 9600)
"""

import logging
import socket
import threading

from meterpoll.transport import (
    CONNECTED,
    DATA,
    DISCONNECTED,
    ERROR,
    TransportEvent,
)

log = logging.getLogger(__name__)


class TcpTransport:
    """TCP client connection to a serial gateway.

    Args:
        host: Gateway host name or IP.
        port: Gateway TCP port.
        connect_timeout: Seconds allowed for the TCP handshake.

    Example:
        >>> transport = TcpTransport("127.0.0.1", 4001)
        >>> transport.connect(events.put)
    """

    _RECV_SIZE = 256

    def __init__(self, host: str, port: int, connect_timeout: float = 5.0):
        """Store the gateway address; ``connect`` opens the socket."""
        self.host = host
        self.port = port
        self._connect_timeout = connect_timeout
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()
        self._post = None
        self._running = False
        self._thread: threading.Thread | None = None

    def connect(self, post) -> None:
        """Start the background connect-and-read thread."""
        self._post = post
        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        """Background thread: connect, then post each received chunk."""
        try:
            sock = socket.create_connection(
                (self.host, self.port), timeout=self._connect_timeout
            )
        except OSError as exc:
            log.error("cannot connect to %s:%d: %s", self.host, self.port, exc)
            self._running = False
            self._post(TransportEvent(ERROR, exc))
            return

        sock.settimeout(None)
        with self._lock:
            self._sock = sock
        log.info("TCP connection established to %s:%d", self.host, self.port)
        self._post(TransportEvent(CONNECTED))

        while self._running:
            try:
                chunk = sock.recv(self._RECV_SIZE)
            except OSError as exc:
                if self._running:
                    self._post(TransportEvent(ERROR, exc))
                break
            if not chunk:
                break
            self._post(TransportEvent(DATA, chunk))

        self._running = False
        with self._lock:
            if self._sock is sock:
                self._sock = None
        try:
            sock.close()
        except OSError:
            pass
        log.info("TCP connection to %s:%d closed", self.host, self.port)
        self._post(TransportEvent(DISCONNECTED))

    def write(self, data: bytes) -> None:
        """Send *data* to the gateway.

        Raises:
            OSError: If not connected or the send fails.
        """
        with self._lock:
            sock = self._sock
        if sock is None:
            raise OSError("not connected to {}:{}".format(self.host, self.port))
        sock.sendall(data)

    def close(self) -> None:
        """Shut down the connection and wait for the reader thread."""
        self._running = False
        with self._lock:
            sock = self._sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
