"""Tests for meterpoll.bus."""

import threading

import pytest

from conftest import (
    FakeMercury,
    FakeTransport,
    energomera_float,
    energomera_reply,
    mercury_reply,
    packed3,
)
from meterpoll.bus import MeterBus
from meterpoll.config import PollOptions, TimingProfile
from meterpoll.errors import (
    DuplicateAddressError,
    ExchangeError,
    MeterError,
    PreconditionError,
)
from meterpoll.meter import Meter
from meterpoll.reading import PollError
from meterpoll.transport import CONNECTED, DATA, DISCONNECTED, ERROR, TransportEvent

# Short response timeout so unanswered requests fail fast.
FAST = PollOptions(
    interval_between_params=0,
    interval_between_meters=0,
    retry_delay=50,
    response_timeout=5,
    poll_interval=0,
)


def _bus(transport, baudrate=9600):
    """Return (bus, sleeps) with sleeps recorded instead of slept."""
    sleeps = []
    return MeterBus(transport, baudrate, sleep=sleeps.append), sleeps


def _two_fakes(first, second):
    def respond(request):
        return first(request) or second(request)
    return respond


class TestRegistry:
    """Meter registration."""

    def test_add_and_order(self):
        """Meters are kept in registration order."""
        bus, _ = _bus(FakeTransport())
        bus.add_mercury_meter(3)
        bus.add_spodes_meter(1)
        bus.add_energomera_meter(2)
        assert list(bus.meters) == [3, 1, 2]
        assert bus.get_meter(1).protocol == "spodes"

    def test_duplicate_address(self):
        """Re-registering an address fails and keeps the original."""
        bus, _ = _bus(FakeTransport())
        first = bus.add_mercury_meter(3)
        with pytest.raises(DuplicateAddressError):
            bus.add_energomera_meter(3)
        assert bus.get_meter(3) is first

    def test_remove(self):
        """Removing frees the address; unknown addresses are a no-op."""
        bus, _ = _bus(FakeTransport())
        bus.add_mercury_meter(3)
        bus.remove_meter(3)
        bus.remove_meter(99)
        assert list(bus.meters) == []
        bus.add_mercury_meter(3)

    def test_meters_view_is_read_only(self):
        """The registry can't be mutated from outside."""
        bus, _ = _bus(FakeTransport())
        with pytest.raises(TypeError):
            bus.meters[5] = object()

    def test_options_forwarded(self):
        """Keyword options reach the meter constructor."""
        bus, _ = _bus(FakeTransport())
        meter = bus.add_mercury_meter(3, access_level=2, password=b"\x02" * 6)
        assert meter.access_level == 2
        assert meter.password == b"\x02" * 6

    def test_bad_address(self):
        """Out-of-range addresses are rejected."""
        bus, _ = _bus(FakeTransport())
        with pytest.raises(PreconditionError):
            bus.add_mercury_meter(300)


class TestTiming:
    """Timing profile selection."""

    def test_known_speed(self):
        """2400 baud has its own profile."""
        bus, _ = _bus(FakeTransport(), 2400)
        assert bus.timing == TimingProfile(20, 250)

    def test_unknown_speed_falls_back(self):
        """Unrecognised speeds use the 9600 profile."""
        bus, _ = _bus(FakeTransport(), 14400)
        assert bus.timing == TimingProfile(5, 150)

    def test_defaults_resolved(self):
        """Unset options come from the timing table and retry defaults."""
        bus, _ = _bus(FakeTransport(), 300)
        opts = bus.options()
        assert opts.interval_between_params == 160
        assert opts.response_timeout == 1600
        assert opts.max_retries == 3
        assert opts.retry_delay == 50


class TestSendRequest:
    """Request/response exchange with retry."""

    def test_success_first_attempt(self):
        """A prompt reply is returned without retries."""
        reply = mercury_reply(1)
        transport = FakeTransport([reply])
        bus, sleeps = _bus(transport)
        assert bus.send_request(b"\x01\x00", FAST) == reply
        assert transport.sent == [b"\x01\x00"]
        assert sleeps == []

    def test_succeeds_on_third_attempt(self):
        """Two timeouts then a reply: success after two retry delays."""
        reply = mercury_reply(1)
        transport = FakeTransport([None, None, reply])
        bus, sleeps = _bus(transport)
        opts = PollOptions(max_retries=3, retry_delay=50, response_timeout=5)
        assert bus.send_request(b"\x01\x00", opts) == reply
        assert len(transport.sent) == 3
        assert sleeps == [0.05, 0.05]

    def test_never_responds(self):
        """No reply at all fails citing three attempts."""
        transport = FakeTransport()
        bus, sleeps = _bus(transport)
        with pytest.raises(ExchangeError, match="3 attempts") as info:
            bus.send_request(b"\x01\x00", FAST)
        assert info.value.attempts == 3
        assert len(transport.sent) == 3
        assert sleeps == [0.05, 0.05]

    def test_write_error_counts_as_attempt(self):
        """Transport write failures are retried like timeouts."""
        reply = mercury_reply(1)
        transport = FakeTransport([OSError("port gone"), reply])
        bus, sleeps = _bus(transport)
        assert bus.send_request(b"\x01\x00", FAST) == reply
        assert sleeps == [0.05]

    def test_max_retries_respected(self):
        """max_retries bounds the number of writes."""
        transport = FakeTransport()
        bus, _ = _bus(transport)
        with pytest.raises(ExchangeError) as info:
            bus.send_request(b"\x01", PollOptions(max_retries=5, response_timeout=1))
        assert info.value.attempts == 5
        assert len(transport.sent) == 5

    def test_stale_data_discarded(self):
        """Data that arrived before the write is not taken as the reply."""
        reply = mercury_reply(1)
        transport = FakeTransport([reply])
        bus, _ = _bus(transport)
        transport.post(TransportEvent(DATA, b"\xde\xad"))
        assert bus.send_request(b"\x01\x00", FAST) == reply

    def test_waits_for_connection(self):
        """Exchanges wait until the transport reports connected."""
        reply = mercury_reply(1)
        transport = FakeTransport([reply], connect=False)
        bus, _ = _bus(transport)
        connected = []
        bus.on("connected", lambda: connected.append(True))
        timer = threading.Timer(
            0.05, lambda: transport.post(TransportEvent(CONNECTED))
        )
        timer.start()
        try:
            assert bus.send_request(b"\x01\x00", FAST) == reply
        finally:
            timer.cancel()
        assert connected == [True]
        assert bus.connected

    def test_disconnect_event_emitted(self):
        """Transport notifications seen during an exchange are dispatched."""
        transport = FakeTransport([mercury_reply(1)])
        bus, _ = _bus(transport)
        seen = []
        bus.on("disconnected", lambda: seen.append("disconnected"))
        transport.post(TransportEvent(DISCONNECTED))
        bus.send_request(b"\x01\x00", FAST)
        assert seen == ["disconnected"]
        assert not bus.connected


class TestPollSequentially:
    """One pass over all meters."""

    def test_failed_open_isolated(self):
        """A meter that fails to open doesn't stop the next one."""
        bad, good = FakeMercury(1, fail_open=True), FakeMercury(2)
        transport = FakeTransport(respond=_two_fakes(bad, good))
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1)
        bus.add_mercury_meter(2)
        emitted = []
        bus.on("data", emitted.append)

        results = bus.poll_sequentially([0x00, 0x11], FAST)

        assert [r.address for r in emitted] == [1, 2]
        assert len(results[1].errors) == 1
        assert results[1].errors[0].context == "connection"
        assert "3 attempts" in results[1].errors[0].message
        assert results[1].parameters == {}

        assert results[2].errors == []
        assert results[2].parameters == {
            "P0": 1500.0, "P1": 500.0, "P2": 500.0, "P3": 500.0,
            "u1": 230.0,
            "EAP": 1234.567, "EAM": 0.0, "ERP": None, "ERM": 0.042,
        }

    def test_connection_failure_skips_close(self):
        """After a failed open nothing else is sent to that meter."""
        transport = FakeTransport(respond=FakeMercury(1, fail_open=True))
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1)
        bus.poll_sequentially([0x11], FAST)
        assert {req[1] for req in transport.sent} == {0x01}

    def test_failed_test_is_connection_error(self):
        """A corrupt reply to the connectivity test aborts the meter."""
        fake = FakeMercury(1)

        def respond(request):
            if request[1] == 0x00:
                return b"\x01\x00\x00\x00"
            return fake(request)

        bus, _ = _bus(FakeTransport(respond=respond))
        bus.add_mercury_meter(1)
        result = bus.poll_sequentially([0x11], FAST)[1]
        assert result.errors == [PollError("connection", "connection test failed")]

    def test_bad_password_is_connection_error(self):
        """A malformed secret is reported without any exchange."""
        transport = FakeTransport(respond=FakeMercury(1))
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1, password=b"\x01\x02")
        result = bus.poll_sequentially([], FAST)[1]
        assert result.errors[0].context == "connection"
        assert transport.sent == []

    def test_parameter_failures_isolated(self):
        """Failed parameters are recorded and the rest still read."""
        fake = FakeMercury(1)
        transport = FakeTransport(respond=fake)
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1)

        # 0x99 is unsupported, 0x21 is never answered by the fake.
        result = bus.poll_sequentially([0x99, 0x21, 0x11], FAST)[1]

        assert [e.context for e in result.errors] == [0x99, 0x21]
        assert "unsupported" in result.errors[0].message
        assert "3 attempts" in result.errors[1].message
        assert result.parameters["u1"] == 230.0
        assert result.parameters["EAP"] == 1234.567
        # No request was spent on the unsupported code.
        assert not any(req[1] == 0x08 and req[3] == 0x99 for req in transport.sent)

    def test_energy_failure_recorded(self):
        """An unanswered energy read is recorded as 'energy'."""
        fake = FakeMercury(1)

        def respond(request):
            return None if request[1] == 0x05 else fake(request)

        bus, _ = _bus(FakeTransport(respond=respond))
        bus.add_mercury_meter(1)
        result = bus.poll_sequentially([0x11], FAST)[1]
        assert [e.context for e in result.errors] == ["energy"]
        assert result.parameters == {"u1": 230.0}

    def test_close_failure_keeps_values(self):
        """A bad close reply is recorded but values are kept."""
        fake = FakeMercury(1)

        def respond(request):
            if request[1] == 0x02:
                return b"\x01\x00\xff\xff"
            return fake(request)

        bus, _ = _bus(FakeTransport(respond=respond))
        bus.add_mercury_meter(1)
        result = bus.poll_sequentially([0x11], FAST)[1]
        assert result.errors == [PollError("close", "close verification failed")]
        assert result.parameters["u1"] == 230.0

    def test_request_sequence(self):
        """open, test, params in order, energy, close."""
        transport = FakeTransport(respond=FakeMercury(1))
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1)
        bus.poll_sequentially([0x11, 0x00], FAST)
        assert [req[1] for req in transport.sent] == [0x01, 0x00, 0x08, 0x08, 0x05, 0x02]
        assert [req[3] for req in transport.sent if req[1] == 0x08] == [0x11, 0x00]

    def test_pacing(self):
        """Pauses follow open, test, each read, energy and each meter."""
        transport = FakeTransport(respond=FakeMercury(1))
        bus, sleeps = _bus(transport)
        bus.add_mercury_meter(1)
        opts = PollOptions(interval_between_params=10, interval_between_meters=20,
                           response_timeout=5)
        bus.poll_sequentially([0x11, 0x00], opts)
        assert sleeps == [0.01, 0.01, 0.01, 0.01, 0.01, 0.02]

    def test_energomera_session(self):
        """Energomera meters skip the test step and track the session."""
        def respond(request):
            cmd = request[4]
            if cmd == 0x0C:
                return energomera_reply(0x05, 0x8C, b"\x00")
            if cmd == 0x03:
                data = b"\x00" * 5 + bytes([15, 0]) + energomera_float(230.5)
                return energomera_reply(0x05, 0x83, data)
            if cmd == 0x02:
                data = (b"\x01" + b"\x00" * 4 + bytes([0, 1, 0])
                        + energomera_float(100.0))
                return energomera_reply(0x05, 0x82, data)
            if cmd == 0x0B:
                return energomera_reply(0x05, 0x8B, b"\x00")
            return None

        transport = FakeTransport(respond=respond)
        bus, _ = _bus(transport)
        meter = bus.add_energomera_meter(0x05)
        result = bus.poll_sequentially([15], FAST)[0x05]

        assert result.errors == []
        assert result.parameters == {"Va": 230.5, "energy_1_1_0": 100.0}
        assert [req[4] for req in transport.sent] == [0x0C, 0x03, 0x02, 0x0B]
        assert meter.is_session_open is False

    def test_spodes_meter(self):
        """SPODES meters read OBIS codes and energy without a test step."""
        def respond(request):
            if request[1] == 0x08:
                return mercury_reply(0x10, bytes([0x08, 0x00, 3]) + packed3(22990))
            return mercury_reply(0x10)

        transport = FakeTransport(respond=respond)
        bus, _ = _bus(transport)
        bus.add_spodes_meter(0x10)
        result = bus.poll_sequentially(["1.0.32.7.0.255"], FAST)[0x10]
        assert result.errors == []
        assert result.parameters == {"u1": 229.9, "EAP": 229.9}
        assert [req[1] for req in transport.sent] == [0x01, 0x08, 0x08, 0x02]

    def test_per_meter_params(self):
        """A meter's own params replace the cycle's codes for it only."""
        transport = FakeTransport(respond=_two_fakes(FakeMercury(1), FakeMercury(2)))
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1, params=[0x11])
        bus.add_mercury_meter(2)
        results = bus.poll_sequentially([0x00], FAST)
        assert "u1" in results[1].parameters
        assert "P0" not in results[1].parameters
        assert "P0" in results[2].parameters
        assert "u1" not in results[2].parameters

    def test_removed_meter_forgets_params(self):
        """Re-adding an address after removal drops its old params."""
        bus, _ = _bus(FakeTransport(respond=FakeMercury(1)))
        bus.add_mercury_meter(1, params=[0x11])
        bus.remove_meter(1)
        bus.add_mercury_meter(1)
        result = bus.poll_sequentially([0x00], FAST)[1]
        assert "P0" in result.parameters
        assert "u1" not in result.parameters

    def test_empty_bus(self):
        """Polling with no meters returns an empty mapping."""
        bus, _ = _bus(FakeTransport())
        assert bus.poll_sequentially([0x11], FAST) == {}


class TestBulkObis:
    """SPODES bulk readers through the bus."""

    def test_read_energy_parameters(self):
        """Reads all four energy registers through send_request."""
        transport = FakeTransport(
            respond=lambda req: mercury_reply(0x10, bytes([0x08, 0, 4]) + (3000).to_bytes(4, "big"))
        )
        bus, _ = _bus(transport)
        bus.add_spodes_meter(0x10)
        values, errors = bus.read_energy_parameters(0x10, FAST)
        assert values == {"EAP": 3.0, "EAM": 3.0, "ERP": 3.0, "ERM": 3.0}
        assert errors == []
        assert len(transport.sent) == 4

    def test_read_instant_parameters_isolates_timeouts(self):
        """Unanswered registers become errors, the rest are values."""
        def respond(request):
            if request[6] == 32:  # C field of 1.0.32.7.0.255 (u1)
                return None
            return mercury_reply(0x10, bytes([0x08, 0, 2]) + (500).to_bytes(2, "big"))

        bus, _ = _bus(FakeTransport(respond=respond))
        bus.add_spodes_meter(0x10)
        values, errors = bus.read_instant_parameters(0x10, FAST)
        assert len(values) == 22
        assert "u1" not in values
        assert [e.context for e in errors] == ["1.0.32.7.0.255"]

    def test_requires_spodes_meter(self):
        """Bulk OBIS reads need a SPODES meter at the address."""
        bus, _ = _bus(FakeTransport())
        bus.add_mercury_meter(1)
        with pytest.raises(PreconditionError):
            bus.read_instant_parameters(1)
        with pytest.raises(PreconditionError):
            bus.read_energy_parameters(2)


class TestPollCyclically:
    """Cyclic polling and cooperative stop."""

    def test_stop_mid_cycle_finishes_cycle(self):
        """stop_polling during a cycle lets that cycle complete."""
        transport = FakeTransport(respond=_two_fakes(FakeMercury(1), FakeMercury(2)))
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1)
        bus.add_mercury_meter(2)
        events = []

        def on_data(result):
            events.append(("data", result.address))
            if result.address == 1:
                bus.stop_polling()

        bus.on("data", on_data)
        bus.on("cycleComplete", lambda results: events.append(
            ("cycleComplete", sorted(results))
        ))

        cycles = bus.poll_cyclically([0x11], FAST)

        assert cycles == 1
        assert events == [
            ("data", 1), ("data", 2), ("cycleComplete", [1, 2]),
        ]
        assert not bus.polling

    def test_runs_until_stopped(self):
        """Cycles repeat, sleeping poll_interval between them."""
        transport = FakeTransport(respond=FakeMercury(1))
        bus, sleeps = _bus(transport)
        bus.add_mercury_meter(1)
        completed = []

        def on_cycle(results):
            completed.append(results)
            if len(completed) == 3:
                bus.stop_polling()

        bus.on("cycleComplete", on_cycle)
        opts = PollOptions(interval_between_params=0, interval_between_meters=0,
                           response_timeout=5, poll_interval=250)
        assert bus.poll_cyclically([0x11], opts) == 3
        assert sleeps.count(0.25) == 3
        assert all(r[1].parameters["u1"] == 230.0 for r in completed)

    def test_second_start_is_noop(self):
        """Starting while already polling returns immediately."""
        transport = FakeTransport(respond=FakeMercury(1))
        bus, _ = _bus(transport)
        bus.add_mercury_meter(1)
        nested = []

        def on_data(result):
            nested.append(bus.poll_cyclically([0x11], FAST))
            bus.stop_polling()

        bus.on("data", on_data)
        assert bus.poll_cyclically([0x11], FAST) == 1
        assert nested == [0]

    def test_cycle_error_emitted(self):
        """An unexpected failure in a cycle is emitted as 'error'."""
        bus, _ = _bus(FakeTransport())
        bus.add_meter(Meter(7))
        errors = []

        def on_error(exc):
            errors.append(exc)
            bus.stop_polling()

        bus.on("error", on_error)
        assert bus.poll_cyclically([], FAST) == 0
        assert isinstance(errors[0], NotImplementedError)


class TestClose:
    """Shutdown."""

    def test_close_releases_transport(self):
        """close() closes the transport and stops polling."""
        transport = FakeTransport()
        bus, _ = _bus(transport)
        bus.close()
        assert transport.closed
        assert bus.closed
        assert not bus.polling
        assert not bus.connected

    def test_close_twice_is_noop(self):
        """A second close() does nothing."""
        transport = FakeTransport()
        bus, _ = _bus(transport)
        bus.close()
        transport.closed = False
        bus.close()
        assert transport.closed is False

    def test_close_ends_connection_wait(self):
        """Closing the bus releases an exchange waiting for the link."""
        bus, _ = _bus(FakeTransport(connect=False))
        raised = []

        def exchange():
            try:
                bus.send_request(b"\x01\x00", FAST)
            except MeterError as exc:
                raised.append(exc)

        worker = threading.Thread(target=exchange)
        worker.start()
        bus.close()
        worker.join(timeout=2.0)
        assert not worker.is_alive()
        assert "closed" in str(raised[0])


class TestObservers:
    """Event subscription."""

    def test_unknown_event(self):
        """Subscribing to an unknown event fails."""
        bus, _ = _bus(FakeTransport())
        with pytest.raises(ValueError):
            bus.on("nope", print)

    def test_transport_error_emitted(self):
        """Transport error events reach 'error' observers."""
        transport = FakeTransport([mercury_reply(1)])
        bus, _ = _bus(transport)
        errors = []
        bus.on("error", errors.append)
        exc = OSError("line noise")
        transport.post(TransportEvent(ERROR, exc))
        bus.send_request(b"\x01\x00", FAST)
        assert errors == [exc]
