"""Polling daemon -- reads meters on a schedule and logs the results.

Foreground loop driven by a TOML config file.  Shuts down cleanly
on SIGINT or SIGTERM: the cycle in progress finishes, then the bus
is closed.

Example:
    Run from the command line::

        meterpoll meterpoll.toml -v
"""

import argparse
import logging
import signal

from meterpoll.bus import MeterBus
from meterpoll.config import load_config
from meterpoll.reading import fmt_context, fmt_value
from meterpoll.serial_transport import SerialTransport
from meterpoll.tcp_transport import TcpTransport

log = logging.getLogger(__name__)

_ADDERS = {
    "mercury": "add_mercury_meter",
    "spodes": "add_spodes_meter",
    "energomera": "add_energomera_meter",
}

# Config keys holding byte secrets given as TOML integer arrays.
_BYTE_KEYS = ("password",)


def build_transport(cfg: dict):
    """Create the transport named by ``cfg["transport"]``."""
    if cfg["transport"] == "tcp":
        return TcpTransport(cfg["tcp_host"], cfg["tcp_port"])
    return SerialTransport(cfg["port"], cfg["baudrate"])


def register_meters(bus: MeterBus, meters: list[dict]) -> None:
    """Register every ``[[meters]]`` entry on *bus*.

    Example:
        >>> register_meters(bus, [{"type": "mercury", "address": 75}])
        >>> list(bus.meters)
        [75]
    """
    for entry in meters:
        options = {
            k: v for k, v in entry.items() if k not in ("type", "address")
        }
        for key in _BYTE_KEYS:
            if isinstance(options.get(key), list):
                options[key] = bytes(options[key])
        getattr(bus, _ADDERS[entry["type"]])(entry["address"], **options)


def request_stop(bus: MeterBus) -> None:
    """Stop cyclic polling after the current cycle.

    A bus whose transport is not connected is closed as well, so an
    exchange still waiting for the link gives up instead of blocking.
    """
    bus.stop_polling()
    if not bus.connected:
        bus.close()


def log_result(result) -> None:
    """Log one meter's poll result."""
    values = ", ".join(
        "%s=%s" % (name, fmt_value(value))
        for name, value in result.parameters.items()
    )
    log.info("meter %d: %s", result.address, values or "no values")
    for error in result.errors:
        log.warning("meter %d: %s: %s",
                    result.address, fmt_context(error.context), error.message)


def main() -> None:
    """CLI entry point -- parse args, load config, run the daemon.

    Example:
        From the shell::

            meterpoll meterpoll.toml
            meterpoll meterpoll.toml -v
    """
    parser = argparse.ArgumentParser(description="meterpoll electricity meter poller")
    parser.add_argument("config", help="path to TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=level,
    )

    cfg = load_config(args.config)
    log.info(
        "starting: transport=%s baudrate=%d meters=%s params=%s",
        cfg["transport"], cfg["baudrate"],
        [m["address"] for m in cfg["meters"]], cfg["params"],
    )

    bus = MeterBus(build_transport(cfg), cfg["baudrate"])
    register_meters(bus, cfg["meters"])
    bus.on("data", log_result)

    def _on_signal(signum, frame):
        log.info("signal %d received, stopping after this cycle", signum)
        request_stop(bus)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        bus.poll_cyclically(cfg["params"], cfg["options"])
    finally:
        bus.close()
        log.info("shutting down")


if __name__ == "__main__":
    main()
