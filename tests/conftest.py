"""Shared pytest fixtures and test doubles for meterpoll tests."""

import struct

from meterpoll.crc import crc16_modbus, crc16_table, crc_bytes
from meterpoll.energomera import frame
from meterpoll.transport import CONNECTED, DATA, TransportEvent


def mercury_reply(addr: int, payload: bytes = b"\x00") -> bytes:
    """Build a Mercury/SPODES response: ADDR + payload + CRC."""
    body = bytes([addr]) + payload
    return body + crc_bytes(crc16_modbus(body))


def packed3(raw: int) -> bytes:
    """Encode *raw* as a Mercury 3-byte packed value."""
    b0 = (raw >> 16) & 0x3F
    b2 = (raw >> 8) & 0xFF
    b1 = raw & 0xFF
    return bytes([b0, b1, b2])


def energomera_reply(addr: int, cmd: int, data: bytes, src: int = 0xFF) -> bytes:
    """Build a framed Energomera response."""
    packet = bytes([src, addr, cmd]) + data
    return frame(packet + crc_bytes(crc16_table(packet)))


def energomera_float(value: float) -> bytes:
    """Little-endian float32 as carried in Energomera payloads."""
    return struct.pack("<f", value)


class FakeTransport:
    """Test double for a transport.

    ``respond`` maps each written request to a response (bytes), or
    None for no response.  A list of canned responses is consumed in
    order instead.  Exceptions in the list are raised from ``write``.
    """

    def __init__(self, responses=None, respond=None, connect=True):
        """Initialize with canned responses or a responder function."""
        self._responses = list(responses or [])
        self._respond = respond
        self._auto_connect = connect
        self.post = None
        self.sent = []
        self.closed = False

    def connect(self, post) -> None:
        """Keep *post* and report connected unless told not to."""
        self.post = post
        if self._auto_connect:
            post(TransportEvent(CONNECTED))

    def write(self, data: bytes) -> None:
        """Record *data* and post the scripted response, if any."""
        self.sent.append(data)
        if self._respond is not None:
            reply = self._respond(data)
        elif self._responses:
            reply = self._responses.pop(0)
        else:
            reply = None
        if isinstance(reply, Exception):
            raise reply
        if reply is not None:
            self.post(TransportEvent(DATA, reply))

    def close(self) -> None:
        """Record the close."""
        self.closed = True


class FakeMercury:
    """Scripted Mercury meter answering on a FakeTransport.

    Returns canned replies keyed by command byte; ``fail_open`` makes
    the open request go unanswered.
    """

    def __init__(self, addr: int, fail_open: bool = False):
        """Initialize the fake meter at *addr*."""
        self.addr = addr
        self.fail_open = fail_open
        self.u1 = 23000

    def __call__(self, request: bytes):
        """Return the reply for *request*, or None."""
        if request[0] != self.addr:
            return None
        cmd = request[1]
        if cmd == 0x01 and self.fail_open:
            return None
        if cmd in (0x00, 0x01, 0x02):
            return mercury_reply(self.addr, b"\x00")
        if cmd == 0x08 and request[3] == 0x11:
            return mercury_reply(self.addr, packed3(self.u1))
        if cmd == 0x08 and request[3] == 0x00:
            return mercury_reply(
                self.addr,
                packed3(150000) + packed3(50000) + packed3(50000) + packed3(50000),
            )
        if cmd == 0x05:
            regs = struct.pack(">4I", 1234567, 0, 0xFFFFFFFF, 42)
            swapped = bytes(
                b for i in range(0, 16, 2) for b in (regs[i + 1], regs[i])
            )
            return mercury_reply(self.addr, swapped)
        return None
