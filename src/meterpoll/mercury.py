"""Mercury meter protocol (compact binary frames).

Frame layout: ADDR, CMD, PARAMS..., CRC_LO, CRC_HI.  The CRC is the
MODBUS CRC-16 over everything before it.  Responses use the same
envelope with the meter's address in front.

Instantaneous values come back as 3-byte packed fields (see
``decode_packed3``); energy comes back as four word-swapped uint32
registers.

Example:
    >>> from meterpoll.mercury import MercuryMeter
    >>> meter = MercuryMeter(0x00)
    >>> meter.build_test().hex(' ')
    '00 00 01 b0'
"""

import logging
import struct

from meterpoll.crc import crc16_modbus, crc_bytes
from meterpoll.errors import FrameValidationError, PreconditionError
from meterpoll.meter import Meter

log = logging.getLogger(__name__)

# -- Command codes -----------------------------------------------------------

CMD_TEST = 0x00
CMD_OPEN = 0x01
CMD_CLOSE = 0x02
CMD_READ_ENERGY = 0x05
CMD_READ_PARAM = 0x08

SUBCMD_POWER = 0x16
SUBCMD_AUX = 0x11

# Codes read with the power sub-command (P, Q, S, cos).
POWER_CODES = frozenset((0x00, 0x04, 0x08, 0x30))

PASSWORD_LEN = 6
TRIAD_RESPONSE_LEN = 15
SINGLE_RESPONSE_LEN = 6
ENERGY_RESPONSE_LEN = 19
ENERGY_NOT_AVAILABLE = 0xFFFFFFFF
ENERGY_NAMES = ("EAP", "EAM", "ERP", "ERM")

# paramCode -> (field names, divisor).  Four names means a triad
# response (total + three phases), one name a single value.
INSTANT_PARAMS = {
    0x00: (("P0", "P1", "P2", "P3"), 100),
    0x04: (("Q0", "Q1", "Q2", "Q3"), 100),
    0x08: (("S0", "S1", "S2", "S3"), 100),
    0x30: (("cosTotal", "cos1", "cos2", "cos3"), 100),
    0x11: (("u1",), 100),
    0x12: (("u2",), 100),
    0x13: (("u3",), 100),
    0x21: (("i1",), 1000),
    0x22: (("i2",), 1000),
    0x23: (("i3",), 1000),
    0x40: (("frequency",), 1000),
}


def decode_packed3(raw):
    """Decode a 3-byte packed Mercury value.

    The bytes ``(b0, b1, b2)`` form the big-endian integer
    ``[0, b0 & 0x3F, b2, b1]``.  The top two bits of ``b0`` carry
    direction flags and are discarded.

    Args:
        raw: Exactly 3 bytes.

    Returns:
        int: Unsigned raw value.

    Example:
        >>> decode_packed3(bytes([0x3F, 0x01, 0x02]))
        4129281
    """
    if len(raw) != 3:
        raise FrameValidationError(
            "packed value must be 3 bytes, got {}".format(len(raw))
        )
    return struct.unpack(">I", bytes([0, raw[0] & 0x3F, raw[2], raw[1]]))[0]


def swap16(block):
    """Swap the two bytes of every 16-bit word in *block*.

    Example:
        >>> swap16(bytes([1, 2, 3, 4])).hex(' ')
        '02 01 04 03'
    """
    if len(block) % 2:
        raise FrameValidationError("swap16 needs an even number of bytes")
    out = bytearray(len(block))
    out[0::2] = block[1::2]
    out[1::2] = block[0::2]
    return bytes(out)


class MercuryMeter(Meter):
    """Mercury 230-family meter.

    Args:
        address: Network address (0-255).
        access_level: Access level sent with the open request.
        password: 6-byte secret (bytes or list of ints).

    Example:
        >>> meter = MercuryMeter(0x4B, access_level=1, password=b"\\x01" * 6)
        >>> meter.build_read(0x11).hex(' ')[:11]
        '4b 08 11 11'
    """

    protocol = "mercury"

    def __init__(self, address, access_level=1, password=b"\x01" * PASSWORD_LEN):
        super().__init__(address)
        self.access_level = access_level
        self.password = bytes(password)

    def create_request(self, cmd, params=b""):
        """Build ADDR + CMD + PARAMS + CRC."""
        body = bytes([self.address, cmd]) + bytes(params)
        return body + crc_bytes(crc16_modbus(body))

    def verify(self, response):
        """Check minimum length and the trailing CRC."""
        if len(response) < 3:
            log.debug(
                "response too short from 0x%02X: %s",
                self.address, bytes(response).hex(" "),
            )
            return False
        body = response[:-2]
        valid = bytes(response[-2:]) == crc_bytes(crc16_modbus(body))
        if not valid:
            log.debug(
                "CRC mismatch from 0x%02X: %s",
                self.address, bytes(response).hex(" "),
            )
        return valid

    def build_test(self):
        return self.create_request(CMD_TEST)

    def build_open(self):
        """Build the open-channel request.

        Raises:
            PreconditionError: If the password is not exactly 6 bytes.
        """
        if len(self.password) != PASSWORD_LEN:
            raise PreconditionError(
                "password must be {} bytes, got {}".format(
                    PASSWORD_LEN, len(self.password)
                )
            )
        return self.create_request(
            CMD_OPEN, bytes([self.access_level]) + self.password
        )

    def build_close(self):
        return self.create_request(CMD_CLOSE)

    def build_read(self, param):
        """Build an instantaneous-value read for *param*.

        Raises:
            PreconditionError: If *param* is not a supported code.
        """
        if param not in INSTANT_PARAMS:
            raise PreconditionError(
                "unsupported parameter code {!r}".format(param)
            )
        sub = SUBCMD_POWER if param in POWER_CODES else SUBCMD_AUX
        return self.create_request(CMD_READ_PARAM, bytes([sub, param]))

    def build_energy(self):
        return self.create_request(CMD_READ_ENERGY, b"\x00\x00")

    def parse_read(self, param, response):
        """Decode an instantaneous-value response for *param*.

        Returns:
            dict: Field name to scaled value.

        Raises:
            PreconditionError: If *param* is not a supported code.
            FrameValidationError: On CRC or length mismatch.

        Example:
            >>> meter.parse_read(0x11, response)
            {'u1': 230.0}
        """
        if param not in INSTANT_PARAMS:
            raise PreconditionError(
                "unsupported parameter code {!r}".format(param)
            )
        if not self.verify(response):
            raise FrameValidationError("invalid instant values response")

        names, divisor = INSTANT_PARAMS[param]
        expected = TRIAD_RESPONSE_LEN if len(names) == 4 else SINGLE_RESPONSE_LEN
        if len(response) != expected:
            raise FrameValidationError(
                "response for 0x{:02X} must be {} bytes, got {}".format(
                    param, expected, len(response)
                )
            )

        values = {}
        for i, name in enumerate(names):
            raw = decode_packed3(response[1 + i * 3 : 4 + i * 3])
            values[name] = raw / divisor
        return values

    def parse_energy(self, response):
        """Decode the energy-register response.

        Unavailable registers (all ones) decode to None, the rest to
        kWh / kvarh.

        Raises:
            FrameValidationError: On CRC or length mismatch.
        """
        if not self.verify(response):
            raise FrameValidationError("invalid energy response")
        if len(response) != ENERGY_RESPONSE_LEN:
            raise FrameValidationError(
                "energy response must be {} bytes, got {}".format(
                    ENERGY_RESPONSE_LEN, len(response)
                )
            )

        block = swap16(bytes(response[1:17]))
        registers = struct.unpack(">4I", block)
        return {
            name: None if raw == ENERGY_NOT_AVAILABLE else raw / 1000
            for name, raw in zip(ENERGY_NAMES, registers)
        }
