from __future__ import annotations

import pytest
import serial

import bus_pirate_spi  # noqa: F401  (registers the bpsim:// handler)
from bus_pirate_spi.bp_constants import BBIOCmd, SPICmd
from bus_pirate_spi.protocol_bpsim import BusPirateEmulator, EmulatedMode

"""
Tests for the emulated probe used by the rest of the test suite.
"""


def test_url_options():
    port = serial.serial_for_url("bpsim://?loopback=0&miso=0x3c&mode=bbio&hardware=v4", timeout=0.1)
    try:
        emulator = port.emulator
        assert not emulator.loopback
        assert emulator.miso == 0x3C
        assert emulator.mode == EmulatedMode.BBIO
        assert emulator.hardware == "v4"

        port.write(b"\x00")
        assert port.read(5) == b"BBIO1"
    finally:
        port.close()


@pytest.mark.parametrize("url", ["bpsim://?color=red", "bpsim://?mode=uart", "bpsim://?miso=zz"])
def test_bad_url(url: str):
    with pytest.raises(serial.SerialException):
        serial.serial_for_url(url)


def test_read_timeout():
    port = serial.serial_for_url("bpsim://", timeout=0.05)
    try:
        assert port.read(1) == b""
    finally:
        port.close()


def test_terminal_echo_and_prompt():
    emulator = BusPirateEmulator()
    assert emulator.feed(b"?\n") == b"?\r\nSyntax error at char 1\r\nHiZ>"
    assert emulator.feed(b"\n") == b"\r\nHiZ>"


def test_binary_mode_entry():
    emulator = BusPirateEmulator()

    # 19 zeroes are not enough
    assert emulator.feed(bytes(19)) == b""
    assert emulator.feed(bytes(1)) == b"BBIO1"
    assert emulator.feed(b"\x01") == b"SPI1"
    assert emulator.mode == EmulatedMode.SPI

    # Set speed, then an unknown command
    assert emulator.feed(b"\x63\x05") == b"\x01\x00"
    assert emulator.speed_code == 3


def test_bulk_transfer():
    emulator = BusPirateEmulator(mode=EmulatedMode.SPI)
    assert emulator.feed(b"\x12abc") == b"\x01abc"
    assert emulator.bulk_frames == [(1, b"abc")]


def test_reset_to_terminal():
    emulator = BusPirateEmulator(mode=EmulatedMode.BBIO)
    response = emulator.feed(b"\x0f")
    assert response.startswith(b"\x01Bus Pirate v3.b\r\n")
    assert response.endswith(b"\r\nHiZ>")
    assert emulator.mode == EmulatedMode.TERMINAL


def test_reject_nth():
    emulator = BusPirateEmulator(mode=EmulatedMode.SPI)
    emulator.reject_nth(SPICmd.CHIP_SELECT, 2)

    assert emulator.feed(b"\x02\x03\x03\x02") == b"\x01\x00\x01\x01"
    assert emulator.cs_history == [0, 1, 0]
    assert emulator.command_log == [0x02, 0x03, 0x03, 0x02]


def test_rejected_enter_spi():
    emulator = BusPirateEmulator(mode=EmulatedMode.BBIO)
    emulator.rejected_commands.add(BBIOCmd.ENTER_SPI)

    assert emulator.feed(b"\x01") == b"BBIO1"
    assert emulator.mode == EmulatedMode.BBIO
