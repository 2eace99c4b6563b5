"""Energomera meter protocol (framed sessions with byte stuffing).

A request is built in layers:

    application  CMD, DATA...
    network      NET_ADDR, SRC_ADDR, application..., CRC_LO, CRC_HI
    link         0x10 0x02, stuffed network packet, 0x10 0x03

The CRC is ``crc16_table`` over the network header and application
bytes.  Stuffing doubles every 0x10 so that the DLE STX / DLE ETX
markers can't appear inside the packet.

A session must be opened (0x0C) before reads and closed (0x0B)
afterwards; the bus takes care of that ordering.

Example:
    >>> from meterpoll.energomera import stuff, unstuff
    >>> stuff(bytes([0x01, 0x10, 0x02])).hex(' ')
    '01 10 10 02'
    >>> unstuff(bytes([0x01, 0x10, 0x10, 0x02])).hex(' ')
    '01 10 02'
"""

import logging
import struct
import time

from meterpoll.crc import crc16_table, crc_bytes
from meterpoll.errors import FrameValidationError, PreconditionError
from meterpoll.meter import Meter

log = logging.getLogger(__name__)

DLE = 0x10
STX = 0x02
ETX = 0x03
FRAME_START = bytes([DLE, STX])
FRAME_END = bytes([DLE, ETX])

CMD_READ_ENERGY = 0x02
CMD_READ_INSTANT = 0x03
CMD_CLOSE = 0x0B
CMD_OPEN = 0x0C
RESP_ENERGY = 0x82
RESP_INSTANT = 0x83

CREDENTIAL_LEN = 8

# Unix time of 2001-01-01T00:00:00Z, the meter's time origin.
EPOCH_2001 = 978307200

# Status codes that carry a usable value.
VALID_STATUSES = (0, 3)

INSTANT_NAMES = (
    "Sa", "Sb", "Sc", "S",
    "Pa", "Pb", "Pc", "P",
    "Qa", "Qb", "Qc", "Q",
    "Ia", "Ib", "Ic",
    "Va", "Vb", "Vc",
    "CosFi", "SinFi",
    "UUab", "UUbc", "UUca",
    "IUa", "IUb", "IUc",
    "f",
)


def stuff(block):
    """Double every DLE byte in *block*."""
    out = bytearray()
    for byte in block:
        out.append(byte)
        if byte == DLE:
            out.append(DLE)
    return bytes(out)


def unstuff(block):
    """Collapse doubled DLE bytes in *block*.

    Raises:
        FrameValidationError: If a DLE is not followed by another DLE.
    """
    out = bytearray()
    i = 0
    while i < len(block):
        byte = block[i]
        if byte == DLE:
            if i + 1 >= len(block) or block[i + 1] != DLE:
                raise FrameValidationError(
                    "unescaped 0x10 at offset {}".format(i)
                )
            i += 1
        out.append(byte)
        i += 1
    return bytes(out)


def frame(packet):
    """Stuff *packet* and wrap it in DLE STX ... DLE ETX."""
    return FRAME_START + stuff(packet) + FRAME_END


def unframe(raw):
    """Check the frame markers and return the unstuffed packet.

    Raises:
        FrameValidationError: On missing markers or bad stuffing.
    """
    if len(raw) < 4:
        raise FrameValidationError(
            "frame too short: {} bytes".format(len(raw))
        )
    if bytes(raw[:2]) != FRAME_START or bytes(raw[-2:]) != FRAME_END:
        raise FrameValidationError("missing DLE STX / DLE ETX markers")
    return unstuff(raw[2:-2])


def timestamp_2001(now):
    """Return *now* (Unix seconds) as seconds since 2001-01-01 UTC."""
    return int(now) - EPOCH_2001


def _pad(value, name):
    raw = value.encode("ascii") if isinstance(value, str) else bytes(value)
    if len(raw) > CREDENTIAL_LEN:
        raise PreconditionError(
            "{} must be at most {} bytes, got {}".format(
                name, CREDENTIAL_LEN, len(raw)
            )
        )
    return raw.ljust(CREDENTIAL_LEN, b"\x00")


class EnergomeraMeter(Meter):
    """Energomera meter speaking the framed session protocol.

    Args:
        address: Network address (0-255).
        source_address: Master's address placed in every request.
        username: Session user name (up to 8 bytes).
        password: Session password (up to 8 bytes).
        session_timeout: Session timeout byte sent with the open.
        clock: Callable returning Unix seconds; stamps read requests.

    Example:
        >>> meter = EnergomeraMeter(0x05, clock=lambda: 978307200)
        >>> meter.build_close().hex(' ')[:14]
        '10 02 05 ff 0b'
    """

    protocol = "energomera"

    def __init__(self, address, source_address=0xFF, username="111",
                 password="222", session_timeout=255, clock=time.time):
        super().__init__(address)
        self.source_address = source_address
        self.username = username
        self.password = password
        self.session_timeout = session_timeout
        self.is_session_open = False
        self._clock = clock

    def create_request(self, cmd, data=b""):
        """Build the framed, checksummed request for *cmd*."""
        packet = bytes([self.address, self.source_address, cmd]) + bytes(data)
        return frame(packet + crc_bytes(crc16_table(packet)))

    def unpack(self, raw):
        """Validate *raw* and return the checked network packet, CRC removed.

        Raises:
            FrameValidationError: On framing, stuffing or CRC errors.
        """
        packet = unframe(raw)
        if len(packet) < 2:
            raise FrameValidationError("packet too short for CRC")
        body = packet[:-2]
        if packet[-2:] != crc_bytes(crc16_table(body)):
            raise FrameValidationError(
                "CRC mismatch in frame {}".format(bytes(raw).hex(" "))
            )
        return body

    def verify(self, response):
        try:
            self.unpack(response)
        except FrameValidationError as exc:
            log.debug("invalid frame from 0x%02X: %s", self.address, exc)
            return False
        return True

    def parse_response(self, raw):
        """Return ``(cmd, data)`` from a response frame.

        Raises:
            FrameValidationError: On framing, stuffing or CRC errors,
                or a packet too short to hold a command byte.
        """
        body = self.unpack(raw)
        if len(body) < 3:
            raise FrameValidationError(
                "packet too short: {} bytes".format(len(body))
            )
        return body[2], body[3:]

    def build_open(self):
        """Build the open-session request.

        Raises:
            PreconditionError: If username or password exceeds 8 bytes.
        """
        data = (
            bytes([self.session_timeout])
            + _pad(self.username, "username")
            + _pad(self.password, "password")
        )
        return self.create_request(CMD_OPEN, data)

    def build_close(self):
        return self.create_request(CMD_CLOSE)

    def session_opened(self):
        self.is_session_open = True

    def session_closed(self):
        self.is_session_open = False

    def _timestamp(self):
        return struct.pack("<I", timestamp_2001(self._clock()))

    def build_read(self, param):
        """Build an instantaneous-value read for parameter *param*.

        Raises:
            PreconditionError: If *param* is not a byte value.
        """
        if not isinstance(param, int) or not (0 <= param <= 255):
            raise PreconditionError(
                "unsupported parameter code {!r}".format(param)
            )
        data = b"\x00" + self._timestamp() + bytes([param])
        return self.create_request(CMD_READ_INSTANT, data)

    def build_energy(self):
        data = b"\x00" + self._timestamp() + bytes([0x00, 0x06, 0x00])
        return self.create_request(CMD_READ_ENERGY, data)

    def parse_read(self, param, response):
        """Decode an instantaneous-value response.

        Returns an empty dict when the meter reports a status other
        than 0 or 3.

        Raises:
            FrameValidationError: On a bad frame, unexpected command,
                short payload or unknown value type.
        """
        cmd, data = self.parse_response(response)
        if cmd != RESP_INSTANT:
            raise FrameValidationError(
                "invalid instant values response command 0x{:02X}".format(cmd)
            )
        if len(data) < 7:
            raise FrameValidationError(
                "instant values payload too short: {} bytes".format(len(data))
            )

        value_type = data[5]
        status = data[6]
        if value_type >= len(INSTANT_NAMES):
            raise FrameValidationError(
                "unknown instant value type {}".format(value_type)
            )
        if status not in VALID_STATUSES:
            log.debug("0x%02X: no value for type %d (status %d)",
                      self.address, value_type, status)
            return {}
        if len(data) < 11:
            raise FrameValidationError(
                "instant value missing: {} bytes".format(len(data))
            )
        value = struct.unpack_from("<f", data, 7)[0]
        return {INSTANT_NAMES[value_type]: value}

    def parse_energy(self, response):
        """Decode an energy response into ``energy_{channel}_{type}_{tariff}``.

        Raises:
            FrameValidationError: On a bad frame, unexpected command or
                short payload.
        """
        cmd, data = self.parse_response(response)
        if cmd != RESP_ENERGY:
            raise FrameValidationError(
                "invalid energy response command 0x{:02X}".format(cmd)
            )
        if len(data) < 8:
            raise FrameValidationError(
                "energy payload too short: {} bytes".format(len(data))
            )

        channel = data[0]
        status = data[5]
        value_type = data[6]
        tariff = data[7]
        if status not in VALID_STATUSES:
            return {}
        if len(data) < 12:
            raise FrameValidationError(
                "energy value missing: {} bytes".format(len(data))
            )
        value = struct.unpack_from("<f", data, 8)[0]
        return {"energy_{}_{}_{}".format(channel, value_type, tariff): value}
