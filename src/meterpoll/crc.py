"""CRC-16 checksums used by the meter protocols.

Two variants share the 0xFFFF initial value and the little-endian
2-byte wire form:

- ``crc16_modbus``: bitwise reflected CRC-16 (poly 0xA001).  Mercury
  and SPODES frames.
- ``crc16_table``: table-driven CRC with a left-shifting register over
  the CRC-16/ARC table.  Energomera frames.

Example:
    >>> from meterpoll.crc import crc16_modbus, crc_bytes
    >>> hex(crc16_modbus(bytes([0x00, 0x00])))
    '0xb001'
    >>> crc_bytes(0xB001).hex(' ')
    '01 b0'
"""

import struct


def _build_crc_table():
    """Build the 256-entry CRC-16/ARC lookup table.

    Each entry is the reflected CRC (poly 0xA001, initial 0) of the
    byte value, giving the familiar ``0x0000, 0xC0C1, 0xC181, ...``
    sequence.

    Returns:
        tuple: 256 16-bit table entries.
    """
    table = []
    for byte_val in range(256):
        crc = byte_val
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
        table.append(crc & 0xFFFF)
    return tuple(table)


CRC16_TABLE = _build_crc_table()


def crc16_modbus(data):
    """Compute the reflected CRC-16 (MODBUS variant) over *data*.

    Args:
        data: Bytes-like object.

    Returns:
        int: 16-bit CRC value.

    Example:
        >>> hex(crc16_modbus(bytes([0x03, 0x01, 0x00])))
        '0x5080'
    """
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc & 0xFFFF


def crc16_table(data):
    """Compute the table-driven CRC-16 used by Energomera frames.

    The register shifts left by 8 and is XORed with the table entry
    indexed by the register's high byte XOR the input byte.

    Args:
        data: Bytes-like object.

    Returns:
        int: 16-bit CRC value.

    Example:
        >>> hex(crc16_table(b"\\x00"))
        '0xbf40'
    """
    crc = 0xFFFF
    for byte in data:
        crc = ((crc << 8) ^ CRC16_TABLE[((crc >> 8) ^ byte) & 0xFF]) & 0xFFFF
    return crc


def crc_bytes(crc):
    """Return the 2-byte wire form of *crc*, low byte first."""
    return struct.pack("<H", crc & 0xFFFF)
