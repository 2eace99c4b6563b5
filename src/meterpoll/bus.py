"""Meter bus: one transport, many meters, one exchange at a time.

``MeterBus`` owns the transport and the address-to-meter registry.  It
serialises request/response exchanges (write, then wait for the next
``data`` event, with timeout and retry) and drives sequential and
cyclic polling.  A failure reading one parameter or reaching one
meter is recorded in that meter's ``PollResult`` and polling moves on.

Transport notifications arrive on a single queue and are consumed by
the polling thread one at a time, so at most one request is ever in
flight.

Example:
    >>> from meterpoll.bus import MeterBus
    >>> from meterpoll.serial_transport import SerialTransport
    >>> bus = MeterBus(SerialTransport("/dev/ttyUSB0", 9600), 9600)
    >>> bus.add_mercury_meter(0x4B, access_level=1)
    >>> bus.on("data", print)
    >>> results = bus.poll_sequentially([0x00, 0x11, 0x21])
    >>> results[0x4B].parameters["u1"]
    229.87
"""

import logging
import queue
import threading
import time
from types import MappingProxyType

from meterpoll.config import PollOptions, timing_for
from meterpoll.energomera import EnergomeraMeter
from meterpoll.errors import (
    ConnectionStageError,
    DuplicateAddressError,
    ExchangeError,
    MeterError,
    ParameterStageError,
    PreconditionError,
    TransportTimeoutError,
)
from meterpoll.mercury import MercuryMeter
from meterpoll.reading import PollResult, fmt_context
from meterpoll.spodes import SpodesMeter
from meterpoll.transport import CONNECTED, DATA, DISCONNECTED, ERROR

log = logging.getLogger(__name__)

EVENTS = ("connected", "disconnected", "error", "data", "cycleComplete")

# How often a wait for the connection re-checks whether the bus closed.
_CONNECT_POLL_S = 0.1


def _seconds(ms):
    return ms / 1000.0


class MeterBus:
    """Polls meters sharing one serial line or TCP gateway.

    Construction hands the transport a callback for its events and
    starts connecting.  Exchanges issued before the transport reports
    ``connected`` wait for it.

    Args:
        transport: Object with ``connect(post)``, ``write(data)`` and
            ``close()``; see ``meterpoll.transport``.
        baudrate: Link speed, used to pick the default timings.
        sleep: Callable taking seconds; used for all pacing delays.

    Example:
        >>> bus = MeterBus(transport, 9600)
        >>> bus.add_energomera_meter(0x05, username="111", password="222")
        >>> bus.poll_cyclically([0x03, 0x07], PollOptions(poll_interval=10000))
    """

    def __init__(self, transport, baudrate=9600, sleep=time.sleep):
        """Register for transport events and start connecting."""
        self._transport = transport
        self.baudrate = baudrate
        self.timing = timing_for(baudrate)
        self._sleep = sleep
        self._meters = {}
        self._params = {}
        self._listeners = {name: [] for name in EVENTS}
        self._events = queue.Queue()
        self._connected = False
        self._ever_connected = False
        self._closed = False
        self._polling = threading.Event()
        transport.connect(self._events.put)

    # -- Observers -------------------------------------------------------

    def on(self, event, callback):
        """Subscribe *callback* to *event*.

        Events: ``connected``, ``disconnected``, ``error(exc)``,
        ``data(PollResult)`` and ``cycleComplete(results)``.

        Raises:
            ValueError: If *event* is not one of the above.
        """
        if event not in self._listeners:
            raise ValueError("unknown event: {}".format(event))
        self._listeners[event].append(callback)

    def _emit(self, event, *args):
        for callback in list(self._listeners[event]):
            callback(*args)

    # -- Registry --------------------------------------------------------

    @property
    def meters(self):
        """Read-only view of the registry, in polling order."""
        return MappingProxyType(self._meters)

    def get_meter(self, address):
        """Return the meter at *address*, or None."""
        return self._meters.get(address)

    def add_meter(self, meter, params=None):
        """Register *meter* at its network address.

        *params*, if given, replaces the cycle's parameter codes for
        this meter.

        Raises:
            DuplicateAddressError: If the address is already taken.
        """
        if meter.address in self._meters:
            raise DuplicateAddressError(
                "meter with address {} already exists".format(meter.address)
            )
        self._meters[meter.address] = meter
        if params is not None:
            self._params[meter.address] = list(params)
        log.debug("registered %r", meter)
        return meter

    def add_mercury_meter(self, address, params=None, **options):
        """Create and register a ``MercuryMeter``."""
        return self.add_meter(MercuryMeter(address, **options), params)

    def add_spodes_meter(self, address, params=None, **options):
        """Create and register a ``SpodesMeter``."""
        return self.add_meter(SpodesMeter(address, **options), params)

    def add_energomera_meter(self, address, params=None, **options):
        """Create and register an ``EnergomeraMeter``."""
        return self.add_meter(EnergomeraMeter(address, **options), params)

    def remove_meter(self, address):
        """Unregister the meter at *address*; unknown addresses are ignored."""
        self._meters.pop(address, None)
        self._params.pop(address, None)

    # -- State -----------------------------------------------------------

    @property
    def connected(self):
        return self._connected

    @property
    def polling(self):
        return self._polling.is_set()

    @property
    def closed(self):
        return self._closed

    def options(self, options=None):
        """Return *options* (or the defaults) resolved for this bus."""
        return (options or PollOptions()).resolve(self.timing)

    # -- Transport events ------------------------------------------------

    def _dispatch(self, event):
        """Apply a non-data transport event to the bus state."""
        if event.kind == CONNECTED:
            self._connected = True
            self._ever_connected = True
            log.info("transport connected")
            self._emit("connected")
        elif event.kind == DISCONNECTED:
            self._connected = False
            log.info("transport disconnected")
            self._emit("disconnected")
        elif event.kind == ERROR:
            log.error("transport error: %s", event.payload)
            self._emit("error", event.payload)
        elif event.kind == DATA:
            log.debug("discarding unsolicited data: %s",
                      bytes(event.payload).hex(" "))

    def _drain(self):
        """Handle queued events, dropping stale responses."""
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            self._dispatch(event)

    def _wait_connected(self):
        """Block until the transport has reported ``connected`` once.

        After a later disconnect exchanges go ahead and fail on write,
        so a dropped link costs retries instead of blocking forever.

        Raises:
            MeterError: If the bus is closed while waiting.
        """
        while not self._ever_connected:
            if self._closed:
                raise MeterError("bus is closed")
            try:
                event = self._events.get(timeout=_CONNECT_POLL_S)
            except queue.Empty:
                continue
            self._dispatch(event)

    def _exchange(self, request, timeout_ms):
        """One attempt: write *request*, return the next data delivery.

        Raises:
            TransportTimeoutError: If nothing arrives in time.
            OSError: If the transport write fails.
        """
        self._drain()
        self._transport.write(request)
        deadline = time.monotonic() + _seconds(timeout_ms)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportTimeoutError("response timeout")
            try:
                event = self._events.get(timeout=remaining)
            except queue.Empty:
                raise TransportTimeoutError("response timeout") from None
            if event.kind == DATA:
                return bytes(event.payload)
            self._dispatch(event)

    def send_request(self, request, options=None):
        """Send *request* and return the raw response.

        Retries up to ``max_retries`` attempts, sleeping a fixed
        ``retry_delay`` between them.  Timeouts and transport write
        errors count as failed attempts.

        Args:
            request: Request frame bytes.
            options: ``PollOptions``; unset fields use the bus defaults.

        Returns:
            bytes: The first data delivery after the write.

        Raises:
            ExchangeError: After all attempts failed; ``attempts`` holds
                the count.
        """
        opts = self.options(options)
        max_retries = max(1, opts.max_retries)
        self._wait_connected()

        attempts = 0
        while True:
            attempts += 1
            log.debug("sending request (attempt %d/%d): %s",
                      attempts, max_retries, request.hex(" "))
            try:
                response = self._exchange(request, opts.response_timeout)
            except (TransportTimeoutError, OSError) as exc:
                log.debug("attempt %d failed: %s", attempts, exc)
                if attempts >= max_retries:
                    raise ExchangeError(
                        "failed after {} attempts: {}".format(attempts, exc),
                        attempts,
                    ) from exc
                self._sleep(_seconds(opts.retry_delay))
                continue
            log.debug("received response: %s", response.hex(" "))
            return response

    # -- Polling ---------------------------------------------------------

    def _open(self, meter, opts):
        """Open the meter session and run its connectivity probe.

        Raises:
            ConnectionStageError: If either step fails.
        """
        try:
            response = self.send_request(meter.build_open(), opts)
            if not meter.verify(response):
                raise ConnectionStageError("failed to open connection")
            meter.session_opened()
            self._sleep(_seconds(opts.interval_between_params))

            request = meter.build_test()
            if request is not None:
                response = self.send_request(request, opts)
                if not meter.verify(response):
                    raise ConnectionStageError("connection test failed")
                self._sleep(_seconds(opts.interval_between_params))
        except ConnectionStageError:
            raise
        except MeterError as exc:
            raise ConnectionStageError(str(exc)) from exc

    def _read(self, meter, context, opts):
        """Read one parameter (or energy when *context* is ``"energy"``).

        Raises:
            ParameterStageError: If building, exchanging or decoding fails.
        """
        try:
            if context == "energy":
                response = self.send_request(meter.build_energy(), opts)
                return meter.parse_energy(response)
            response = self.send_request(meter.build_read(context), opts)
            return meter.parse_read(context, response)
        except MeterError as exc:
            raise ParameterStageError(context, str(exc)) from exc

    def _close_meter(self, meter, result, opts):
        """Close the session, recording a failure as ``close``."""
        try:
            response = self.send_request(meter.build_close(), opts)
            if not meter.verify(response):
                result.add_error("close", "close verification failed")
        except MeterError as exc:
            result.add_error("close", str(exc))
        finally:
            meter.session_closed()

    def poll_meter(self, meter, param_codes=(), options=None):
        """Run the full read sequence against one meter.

        Open and test failures are recorded once as ``connection`` and
        end the sequence.  Parameter and energy failures are recorded
        under their own context and the sequence continues.

        Returns:
            PollResult: Values and errors for *meter*.
        """
        opts = self.options(options)
        result = PollResult(meter.address)
        try:
            self._open(meter, opts)
        except ConnectionStageError as exc:
            log.warning("meter 0x%02X: connection failed: %s", meter.address, exc)
            result.add_error("connection", str(exc))
            return result

        for context in list(param_codes) + ["energy"]:
            try:
                result.parameters.update(self._read(meter, context, opts))
            except ParameterStageError as exc:
                log.warning("meter 0x%02X: %s failed: %s",
                            meter.address, fmt_context(exc.context), exc)
                result.add_error(exc.context, str(exc))
            self._sleep(_seconds(opts.interval_between_params))

        self._close_meter(meter, result, opts)
        return result

    def poll_sequentially(self, param_codes=(), options=None):
        """Poll every registered meter once, in registration order.

        Emits ``data`` with each meter's ``PollResult`` as soon as that
        meter is done.

        Args:
            param_codes: Parameter codes to read, in order, from every
                meter registered without its own ``params``.
            options: ``PollOptions``; unset fields use the bus defaults.

        Returns:
            dict: Address to ``PollResult``.
        """
        opts = self.options(options)
        results = {}
        for address, meter in list(self._meters.items()):
            log.debug("polling meter 0x%02X (%s)", address, meter.protocol)
            codes = self._params.get(address, param_codes)
            result = self.poll_meter(meter, codes, opts)
            results[address] = result
            log.info("meter 0x%02X: %d values, %d errors",
                     address, len(result.parameters), len(result.errors))
            self._emit("data", result)
            self._sleep(_seconds(opts.interval_between_meters))
        return results

    def poll_cyclically(self, param_codes=(), options=None):
        """Poll all meters repeatedly until ``stop_polling`` or ``close``.

        Each cycle runs ``poll_sequentially``, emits ``cycleComplete``
        with the results and sleeps ``poll_interval``.  Returns at once
        if a cyclic poll is already running.  A cycle that raises is
        logged and emitted as ``error``; polling continues.

        Returns:
            int: Number of completed cycles.
        """
        if self._polling.is_set():
            return 0
        self._polling.set()
        opts = self.options(options)
        cycles = 0

        while self._polling.is_set():
            log.debug("starting polling cycle")
            try:
                results = self.poll_sequentially(param_codes, opts)
            except Exception as exc:
                log.exception("polling cycle failed")
                self._emit("error", exc)
            else:
                cycles += 1
                self._emit("cycleComplete", results)
                log.info("cycle %d complete, next in %d ms",
                         cycles, opts.poll_interval)
            self._sleep(_seconds(opts.poll_interval))

        return cycles

    def stop_polling(self):
        """Stop cyclic polling after the current cycle."""
        self._polling.clear()

    # -- SPODES bulk reads -----------------------------------------------

    def _spodes_meter(self, address):
        meter = self._meters.get(address)
        if not isinstance(meter, SpodesMeter):
            raise PreconditionError(
                "no SPODES meter registered at address {}".format(address)
            )
        return meter

    def read_instant_parameters(self, address, options=None):
        """Read every instantaneous OBIS register of a SPODES meter.

        Returns:
            tuple: ``(values, errors)`` as from
                ``SpodesMeter.read_instant_parameters``.
        """
        opts = self.options(options)
        meter = self._spodes_meter(address)
        return meter.read_instant_parameters(
            lambda request: self.send_request(request, opts)
        )

    def read_energy_parameters(self, address, options=None):
        """Read the four energy OBIS registers of a SPODES meter."""
        opts = self.options(options)
        meter = self._spodes_meter(address)
        return meter.read_energy_parameters(
            lambda request: self.send_request(request, opts)
        )

    # -- Shutdown --------------------------------------------------------

    def close(self):
        """Stop polling and release the transport.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.stop_polling()
        self._transport.close()
        self._drain()
        self._connected = False
