"""Serial transport for RS-485 meter buses.

Wraps pyserial.  A background thread collects bytes until the line has
been quiet for the inter-frame gap and posts them to the bus as one
``data`` event.

Example:
    >>> from meterpoll.serial_transport import SerialTransport
    >>> transport = SerialTransport("/dev/ttyUSB0", 9600)
    >>> bus = MeterBus(transport, 9600)
"""

import logging
import threading

import serial

from meterpoll.config import timing_for
from meterpoll.transport import (
    CONNECTED,
    DATA,
    DISCONNECTED,
    ERROR,
    TransportEvent,
)

log = logging.getLogger(__name__)


class SerialTransport:
    """Half-duplex RS-485 serial transport.

    Args:
        port: Serial port device path (e.g. ``"/dev/ttyUSB0"``).
        baudrate: Baud rate (e.g. ``9600``).
        parity: pyserial parity constant (default none).
        bytesize: Data bits.
        stopbits: Stop bits.
        frame_gap: Silence in ms that ends a response; defaults to the
            timing-table pause for *baudrate*.

    Example:
        >>> transport = SerialTransport("/dev/ttyUSB0", 9600)
        >>> transport.connect(events.put)
        >>> transport.write(b"\\x00\\x00\\x01\\xb0")
    """

    def __init__(self, port, baudrate, parity=serial.PARITY_NONE,
                 bytesize=serial.EIGHTBITS, stopbits=serial.STOPBITS_ONE,
                 frame_gap=None):
        """Store port settings; the port is opened by ``connect``."""
        self.port = port
        self.baudrate = baudrate
        if frame_gap is None:
            frame_gap = timing_for(baudrate).system_timeout
        self.frame_gap = frame_gap
        self._settings = {
            "parity": parity,
            "bytesize": bytesize,
            "stopbits": stopbits,
        }
        self._ser = None
        self._post = None
        self._running = False
        self._reader = None

    def connect(self, post):
        """Open the port and start the reader thread.

        Posts ``connected`` on success, ``error`` if the port cannot be
        opened.

        Args:
            post: Callable receiving ``TransportEvent`` objects.
        """
        self._post = post
        try:
            self._ser = serial.Serial(
                self.port, self.baudrate, timeout=self.frame_gap / 1000.0,
                **self._settings
            )
        except serial.SerialException as exc:
            log.error("cannot open %s: %s", self.port, exc)
            post(TransportEvent(ERROR, exc))
            return

        log.info("serial port %s opened at %d baud", self.port, self.baudrate)
        self._running = True
        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._reader.start()
        post(TransportEvent(CONNECTED))

    def _read_frame(self):
        """Read one response: bytes until a read times out empty.

        The port timeout is the frame gap, so an empty read means the
        line has gone quiet.  Returns b"" if nothing arrived at all.
        """
        buf = bytearray(self._ser.read(1))
        if not buf:
            return b""
        while True:
            more = self._ser.read(self._ser.in_waiting or 1)
            if not more:
                return bytes(buf)
            buf += more

    def _read_loop(self):
        """Background thread: post each gap-delimited response as data."""
        while self._running:
            try:
                chunk = self._read_frame()
            except (serial.SerialException, OSError) as exc:
                if self._running:
                    self._running = False
                    self._post(TransportEvent(ERROR, exc))
                    self._post(TransportEvent(DISCONNECTED))
                return
            if chunk:
                self._post(TransportEvent(DATA, chunk))

    def write(self, data):
        """Write *data* and wait until it has been transmitted.

        Raises:
            OSError: If the port is not open or the write fails.
        """
        if self._ser is None or not self._ser.is_open:
            raise OSError("serial port {} is not open".format(self.port))
        try:
            self._ser.write(data)
            self._ser.flush()
        except serial.SerialException as exc:
            raise OSError(str(exc)) from exc

    def close(self):
        """Stop the reader thread and close the port."""
        self._running = False
        if self._reader is not None:
            self._reader.join(timeout=1.0)
            self._reader = None
        if self._ser is not None:
            self._ser.close()
            self._ser = None
            if self._post is not None:
                self._post(TransportEvent(DISCONNECTED))
