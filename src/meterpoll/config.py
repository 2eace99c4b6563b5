"""Timing tables, poll options and config-file loading.

Central place for tuneable parameters shared across modules.  All
durations are in milliseconds.

Example:
    >>> from meterpoll.config import timing_for, load_config
    >>> timing_for(2400)
    TimingProfile(system_timeout=20, response_timeout=250)
    >>> cfg = load_config("meterpoll.toml")
    >>> cfg["transport"]
    'serial'
"""

import tomllib
from dataclasses import dataclass, fields, replace
from typing import NamedTuple


class TimingProfile(NamedTuple):
    """Pacing derived from the link speed (milliseconds)."""

    system_timeout: int
    response_timeout: int


TIMINGS = {
    38400: TimingProfile(2, 150),
    19200: TimingProfile(3, 150),
    9600: TimingProfile(5, 150),
    4800: TimingProfile(10, 180),
    2400: TimingProfile(20, 250),
    1200: TimingProfile(40, 400),
    600: TimingProfile(80, 800),
    300: TimingProfile(160, 1600),
}

DEFAULT_BAUDRATE = 9600
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 50
DEFAULT_POLL_INTERVAL_MS = 5000

METER_TYPES = ("mercury", "spodes", "energomera")


def timing_for(baudrate: int) -> TimingProfile:
    """Return the timing profile for *baudrate*, falling back to 9600."""
    return TIMINGS.get(baudrate, TIMINGS[DEFAULT_BAUDRATE])


@dataclass(frozen=True)
class PollOptions:
    """Pacing and retry settings for a poll.

    Any field left as None is filled in by ``resolve``.  Zero is a
    valid explicit value.
    """

    interval_between_params: int | None = None
    interval_between_meters: int | None = None
    max_retries: int | None = None
    retry_delay: int | None = None
    response_timeout: int | None = None
    poll_interval: int | None = None

    def resolve(self, timing: TimingProfile) -> "PollOptions":
        """Return a copy with every unset field defaulted from *timing*.

        Example:
            >>> PollOptions(max_retries=5).resolve(timing_for(9600))
            PollOptions(interval_between_params=5, interval_between_meters=5,
                        max_retries=5, retry_delay=50, response_timeout=150,
                        poll_interval=5000)
        """
        defaults = {
            "interval_between_params": timing.system_timeout,
            "interval_between_meters": timing.system_timeout,
            "max_retries": DEFAULT_MAX_RETRIES,
            "retry_delay": DEFAULT_RETRY_DELAY_MS,
            "response_timeout": timing.response_timeout,
            "poll_interval": DEFAULT_POLL_INTERVAL_MS,
        }
        return replace(self, **{
            name: value for name, value in defaults.items()
            if getattr(self, name) is None
        })

    @classmethod
    def from_dict(cls, raw: dict) -> "PollOptions":
        """Build options from a mapping, rejecting unknown keys.

        Raises:
            ValueError: On an unknown key or a non-int value.
        """
        known = {f.name for f in fields(cls)}
        for key, value in raw.items():
            if key not in known:
                raise ValueError("unknown poll option: %s" % key)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(
                    "options.%s must be int, got %s" % (key, type(value).__name__)
                )
            if value < 0:
                raise ValueError("options.%s must not be negative" % key)
        return cls(**raw)


def load_config(path: str) -> dict:
    """Read a TOML config file and validate required keys.

    Keys: ``transport`` (str, "serial" or "tcp", default "serial"),
    ``baudrate`` (int, default 9600), ``params`` (list of int codes or
    OBIS strings), optional ``[options]`` table, and a non-empty
    ``[[meters]]`` array.

    For serial: ``port`` (str).
    For tcp: ``[tcp]`` section with ``host`` (str), ``port`` (int).

    Each meter has ``type`` (str) and ``address`` (int), and may carry
    its own ``params`` list replacing the top-level one; the remaining
    keys are passed to the meter constructor.

    Raises:
        ValueError: If any required key is missing or has the wrong type.

    Example:
        >>> cfg = load_config("meterpoll.toml")
        >>> cfg["meters"][0]["type"]
        'mercury'
    """
    with open(path, "rb") as f:
        raw = tomllib.load(f)

    transport = raw.get("transport", "serial")
    if not isinstance(transport, str):
        raise ValueError("transport must be str, got %s" % type(transport).__name__)
    if transport not in ("serial", "tcp"):
        raise ValueError("transport must be 'serial' or 'tcp', got '%s'" % transport)

    baudrate = raw.get("baudrate", DEFAULT_BAUDRATE)
    if not isinstance(baudrate, int):
        raise ValueError("baudrate must be int, got %s" % type(baudrate).__name__)

    result = {
        "transport": transport,
        "baudrate": baudrate,
        "params": _require_params(raw),
        "options": PollOptions.from_dict(_optional_table(raw, "options")),
        "meters": _require_meters(raw),
    }

    if transport == "serial":
        _require_str(raw, "port")
        result["port"] = raw["port"]
    else:
        _require_tcp_section(raw)
        result["tcp_host"] = raw["tcp"]["host"]
        result["tcp_port"] = raw["tcp"]["port"]

    return result


def _require_params(raw: dict[str, object]) -> list:
    """Validate that params, if present, is a list of ints or strs."""
    return _check_params(raw.get("params", []), "params")


def _check_params(params: object, name: str) -> list:
    """Check that *params* is a list of int codes or OBIS strings."""
    if not isinstance(params, list):
        raise ValueError("%s must be a list" % name)
    for i, v in enumerate(params):
        if isinstance(v, bool) or not isinstance(v, (int, str)):
            raise ValueError(
                "%s[%d] must be int or str, got %s" % (name, i, type(v).__name__)
            )
    return params


def _require_meters(raw: dict[str, object]) -> list[dict]:
    """Validate the [[meters]] array: type, address and unique addresses."""
    if "meters" not in raw:
        raise ValueError("missing required key: meters")
    meters = raw["meters"]
    if not isinstance(meters, list) or len(meters) == 0:
        raise ValueError("meters must be a non-empty array of tables")

    seen = set()
    for i, meter in enumerate(meters):
        if not isinstance(meter, dict):
            raise ValueError("meters[%d] must be a table" % i)
        if meter.get("type") not in METER_TYPES:
            raise ValueError(
                "meters[%d].type must be one of %s" % (i, ", ".join(METER_TYPES))
            )
        address = meter.get("address")
        if not isinstance(address, int) or not (0 <= address <= 255):
            raise ValueError("meters[%d].address must be int 0-255" % i)
        if "params" in meter:
            _check_params(meter["params"], "meters[%d].params" % i)
        if address in seen:
            raise ValueError("duplicate meter address: %d" % address)
        seen.add(address)
    return meters


def _optional_table(raw: dict[str, object], key: str) -> dict:
    """Return table *key* or an empty dict, checking its type."""
    table = raw.get(key, {})
    if not isinstance(table, dict):
        raise ValueError("[%s] must be a table" % key)
    return table


def _require_tcp_section(raw: dict[str, object]) -> None:
    """Validate [tcp] section has host (str) and port (int)."""
    if "tcp" not in raw:
        raise ValueError("tcp transport requires [tcp] section")
    tcp = raw["tcp"]
    if not isinstance(tcp, dict):
        raise ValueError("[tcp] must be a table")
    if "host" not in tcp:
        raise ValueError("missing required key: tcp.host")
    if not isinstance(tcp["host"], str):
        raise ValueError("tcp.host must be str, got %s" % type(tcp["host"]).__name__)
    if "port" not in tcp:
        raise ValueError("missing required key: tcp.port")
    if not isinstance(tcp["port"], int):
        raise ValueError("tcp.port must be int, got %s" % type(tcp["port"]).__name__)


def _require_str(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a str."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], str):
        raise ValueError("%s must be str, got %s" % (key, type(raw[key]).__name__))
