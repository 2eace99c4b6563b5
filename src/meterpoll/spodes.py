"""SPODES meter protocol (OBIS-addressed reads).

Uses the same ADDR + CMD + PARAMS + CRC envelope as Mercury.  Each
read names one register by its OBIS code; the response carries a
length-prefixed payload whose size selects the decoding.

Example:
    >>> from meterpoll.spodes import SpodesMeter
    >>> meter = SpodesMeter(0x10)
    >>> meter.read_by_obis("1.0.32.7.0.255").hex(' ')[:26]
    '10 08 c0 01 01 00 20 07 00'
"""

import logging
import struct

from meterpoll.crc import crc16_modbus, crc_bytes
from meterpoll.errors import FrameValidationError, MeterError, PreconditionError
from meterpoll.mercury import decode_packed3
from meterpoll.meter import Meter
from meterpoll.reading import PollError

log = logging.getLogger(__name__)

CMD_OPEN = 0x01
CMD_CLOSE = 0x02
CMD_READ_OBIS = 0x08

OBIS_READ_PREFIX = bytes([0xC0, 0x01])
PASSWORD_LEN = 6

# Offset of the declared payload length in a response.
LENGTH_OFFSET = 3

INSTANT_PARAMS = {
    "1.0.32.7.0.255": "u1",
    "1.0.52.7.0.255": "u2",
    "1.0.72.7.0.255": "u3",
    "1.0.31.7.0.255": "i1",
    "1.0.51.7.0.255": "i2",
    "1.0.71.7.0.255": "i3",
    "1.0.1.7.0.255": "P0",
    "1.0.21.7.0.255": "P1",
    "1.0.41.7.0.255": "P2",
    "1.0.61.7.0.255": "P3",
    "1.0.3.7.0.255": "Q0",
    "1.0.23.7.0.255": "Q1",
    "1.0.43.7.0.255": "Q2",
    "1.0.63.7.0.255": "Q3",
    "1.0.9.7.0.255": "S0",
    "1.0.29.7.0.255": "S1",
    "1.0.49.7.0.255": "S2",
    "1.0.69.7.0.255": "S3",
    "1.0.13.7.0.255": "cosTotal",
    "1.0.33.7.0.255": "cos1",
    "1.0.53.7.0.255": "cos2",
    "1.0.73.7.0.255": "cos3",
    "1.0.14.7.0.255": "frequency",
}

ENERGY_PARAMS = {
    "1.0.1.8.0.255": "EAP",
    "1.0.2.8.0.255": "EAM",
    "1.0.3.8.0.255": "ERP",
    "1.0.4.8.0.255": "ERM",
}

# Register read by the bus's single energy step.
ENERGY_OBIS = "1.0.1.8.0.255"


def parse_obis_code(code):
    """Convert an ``A.B.C.D.E.F`` OBIS string to its six octets.

    Raises:
        PreconditionError: If the code does not have exactly six
            decimal components in range 0-255.

    Example:
        >>> parse_obis_code("1.0.1.8.0.255").hex(' ')
        '01 00 01 08 00 ff'
    """
    if not isinstance(code, str):
        raise PreconditionError("OBIS code must be a string, got {!r}".format(code))
    parts = code.split(".")
    if len(parts) != 6:
        raise PreconditionError("invalid OBIS code format: {!r}".format(code))
    octets = []
    for part in parts:
        if not (part.isascii() and part.isdigit()):
            raise PreconditionError("invalid OBIS code format: {!r}".format(code))
        value = int(part)
        if value > 255:
            raise PreconditionError(
                "OBIS component out of range in {!r}".format(code)
            )
        octets.append(value)
    return bytes(octets)


def obis_name(code):
    """Return the field name for an OBIS code, or the code itself."""
    return INSTANT_PARAMS.get(code) or ENERGY_PARAMS.get(code) or code


class SpodesMeter(Meter):
    """SPODES (DLMS-style) meter addressed by OBIS codes.

    Args:
        address: Network address (0-255).
        access_level: Access level sent with the open request.
        password: 6-byte secret.
        client_address: Client address sent with the open request.
        logical_name: Logical device name (informational).
    """

    protocol = "spodes"

    def __init__(self, address, access_level=1, password=b"\x01" * PASSWORD_LEN,
                 client_address=0x01, logical_name="0.0.1.0.0.255"):
        super().__init__(address)
        self.access_level = access_level
        self.password = bytes(password)
        self.client_address = client_address
        self.logical_name = logical_name

    def create_request(self, cmd, params=b""):
        """Build ADDR + CMD + PARAMS + CRC."""
        body = bytes([self.address, cmd]) + bytes(params)
        return body + crc_bytes(crc16_modbus(body))

    def verify(self, response):
        if len(response) < 3:
            return False
        return bytes(response[-2:]) == crc_bytes(crc16_modbus(response[:-2]))

    def build_open(self):
        """Build the open-session request.

        Raises:
            PreconditionError: If the password is not exactly 6 bytes.
        """
        if len(self.password) != PASSWORD_LEN:
            raise PreconditionError(
                "password must be {} bytes, got {}".format(
                    PASSWORD_LEN, len(self.password)
                )
            )
        params = bytes([self.access_level, self.client_address]) + self.password
        return self.create_request(CMD_OPEN, params)

    def build_close(self):
        return self.create_request(CMD_CLOSE)

    def read_by_obis(self, code):
        """Build a read request for the register named by *code*."""
        return self.create_request(
            CMD_READ_OBIS, OBIS_READ_PREFIX + parse_obis_code(code)
        )

    def parse_obis(self, response):
        """Decode a read-by-OBIS response into a scaled value.

        Payload size selects the decoding: 3 bytes packed / 100,
        4 bytes uint32 BE / 1000, 2 bytes uint16 BE / 1000.

        Raises:
            FrameValidationError: On CRC mismatch, a declared length
                that overruns the frame, or an unsupported payload size.
        """
        log.debug("OBIS response from 0x%02X: %s",
                  self.address, bytes(response).hex(" "))
        if not self.verify(response):
            raise FrameValidationError("invalid OBIS response")
        if len(response) < LENGTH_OFFSET + 3:
            raise FrameValidationError(
                "OBIS response too short: {} bytes".format(len(response))
            )

        length = response[LENGTH_OFFSET]
        start = LENGTH_OFFSET + 1
        if start + length > len(response) - 2:
            raise FrameValidationError(
                "declared length {} overruns {}-byte frame".format(
                    length, len(response)
                )
            )
        data = bytes(response[start : start + length])

        if length == 3:
            return decode_packed3(data) / 100
        if length == 4:
            return struct.unpack(">I", data)[0] / 1000
        if length == 2:
            return struct.unpack(">H", data)[0] / 1000
        raise FrameValidationError("unsupported OBIS response format")

    def build_read(self, param):
        return self.read_by_obis(param)

    def parse_read(self, param, response):
        return {obis_name(param): self.parse_obis(response)}

    def build_energy(self):
        return self.read_by_obis(ENERGY_OBIS)

    def parse_energy(self, response):
        return {obis_name(ENERGY_OBIS): self.parse_obis(response)}

    def _read_table(self, table, send):
        """Read every code in *table* through *send*, isolating failures."""
        values = {}
        errors = []
        for code, name in table.items():
            try:
                response = send(self.read_by_obis(code))
                values[name] = self.parse_obis(response)
            except MeterError as exc:
                log.warning("error reading OBIS %s from 0x%02X: %s",
                            code, self.address, exc)
                errors.append(PollError(code, str(exc)))
        return values, errors

    def read_instant_parameters(self, send):
        """Read all 23 instantaneous registers.

        Args:
            send: Callable taking request bytes and returning the
                response bytes (e.g. ``MeterBus.send_request``).

        Returns:
            tuple: ``(values, errors)``, a name-to-value dict and a list
                of ``PollError`` for the codes that failed.
        """
        return self._read_table(INSTANT_PARAMS, send)

    def read_energy_parameters(self, send):
        """Read the four energy registers; see ``read_instant_parameters``."""
        return self._read_table(ENERGY_PARAMS, send)
