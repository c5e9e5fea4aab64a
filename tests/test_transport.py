from __future__ import annotations

import re
from typing import Iterator

import pytest

import bus_pirate_spi
from bus_pirate_spi import SerialConfig, SerialTransport

"""
Tests for the serial transport, using pyserial's loop:// port (everything written is read back).
"""


@pytest.fixture()
def loop_transport() -> Iterator[SerialTransport]:
    with SerialTransport("loop://", SerialConfig(timeout=0.2)) as transport:
        yield transport


def test_read_exact(loop_transport: SerialTransport):
    assert loop_transport.write(b"\x01\x02\x03\x04") == 4

    assert loop_transport.read_exact(3) == b"\x01\x02\x03"

    # The 4th byte must not have been consumed by the previous read
    assert loop_transport.read_exact(1) == b"\x04"


def test_read_exact_zero_and_negative(loop_transport: SerialTransport):
    assert loop_transport.read_exact(0) == b""

    with pytest.raises(ValueError):
        loop_transport.read_exact(-1)


def test_read_exact_timeout(loop_transport: SerialTransport):
    """
    A read that times out must leave nothing behind that a later read could pick up
    """
    loop_transport.write(b"ab")

    with pytest.raises(bus_pirate_spi.ReadTimeoutError):
        loop_transport.read_exact(3, timeout=0.05)

    loop_transport.write(b"cd")
    assert loop_transport.read_exact(2) == b"cd"


def test_read_until_literal(loop_transport: SerialTransport):
    loop_transport.write(b"junk BBIO1")
    assert loop_transport.read_until(b"BBIO1").endswith(b"BBIO1")


def test_read_until_regex(loop_transport: SerialTransport):
    loop_transport.write(b"i\r\nBus Pirate v3.b\r\nHiZ>")
    response = loop_transport.read_until(re.compile(rb"\r\n[^\r\n>]*>"))
    assert response == b"i\r\nBus Pirate v3.b\r\nHiZ>"


def test_read_until_leaves_following_data(loop_transport: SerialTransport):
    # Two prompts arrive together, each read takes only its own
    loop_transport.write(b"A>B>")
    assert loop_transport.read_until(b">") == b"A>"
    assert loop_transport.read_until(b">") == b"B>"


def test_read_until_timeout(loop_transport: SerialTransport):
    loop_transport.write(b"no prompt here")

    with pytest.raises(bus_pirate_spi.ReadTimeoutError):
        loop_transport.read_until(b">", timeout=0.05)

    # Transport still usable afterwards
    loop_transport.write(b"OK>")
    assert loop_transport.read_until(b">") == b"OK>"


def test_flush(loop_transport: SerialTransport):
    loop_transport.write(b"stale")
    loop_transport.flush()
    loop_transport.write(b"new")
    assert loop_transport.read_exact(3) == b"new"


def test_open_close_cycles():
    transport = SerialTransport("loop://")
    for _ in range(5):
        transport.open()
        assert transport.is_open
        transport.write(b"x")
        assert transport.read_exact(1) == b"x"
        transport.close()
        assert not transport.is_open

    # Closing twice is harmless
    transport.close()


def test_reset(loop_transport: SerialTransport):
    loop_transport.reset()
    assert loop_transport.is_open
    loop_transport.write(b"y")
    assert loop_transport.read_exact(1) == b"y"


def test_open_twice(loop_transport: SerialTransport):
    with pytest.raises(bus_pirate_spi.SerialOpenError):
        loop_transport.open()


def test_open_nonexistent_port():
    transport = SerialTransport("/dev/this-port-does-not-exist")
    with pytest.raises(bus_pirate_spi.SerialOpenError):
        transport.open()
    assert not transport.is_open


def test_closed_port_errors():
    transport = SerialTransport("loop://")

    with pytest.raises(bus_pirate_spi.SerialWriteError):
        transport.write(b"x")

    with pytest.raises(bus_pirate_spi.SerialReadError):
        transport.read_exact(1)

    # Both are connection errors
    with pytest.raises(bus_pirate_spi.BusPirateConnectionError):
        transport.read_until(b">")


def test_config_applied():
    config = SerialConfig(baudrate=9600, timeout=0.25)
    with SerialTransport("loop://", config) as transport:
        assert transport.timeout == 0.25
        assert transport.serial_port is not None
        assert transport.serial_port.baudrate == 9600
