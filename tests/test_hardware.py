from __future__ import annotations

import os
from typing import Iterator

import pytest

import bus_pirate_spi
from bus_pirate_spi import SPI_SPEED_HZ, BinarySPI, BusPirateDevice, OperationalMode, SPIStatus

"""
Test suite for a real Bus Pirate.
This test suite _requires access to hardware_ and only runs when the BUS_PIRATE_PORT environment variable
names the probe's serial port, e.g. BUS_PIRATE_PORT=/dev/ttyUSB0.
The loopback test additionally needs MOSI jumpered to MISO.
"""

BUS_PIRATE_PORT = os.environ.get("BUS_PIRATE_PORT")

pytestmark = [
    pytest.mark.hardware,
    pytest.mark.skipif(BUS_PIRATE_PORT is None, reason="BUS_PIRATE_PORT not set"),
]


@pytest.fixture()
def hw_device() -> Iterator[BusPirateDevice]:
    with BusPirateDevice(str(BUS_PIRATE_PORT)) as device:
        yield device


@pytest.fixture()
def hw_spi(hw_device: BusPirateDevice) -> Iterator[BinarySPI]:
    spi = BinarySPI(hw_device)
    assert spi.init(bus_pirate_spi.SPISetup()) == SPIStatus.OK
    yield spi
    spi.deinit()


def test_connect(hw_device: BusPirateDevice):
    assert hw_device.is_connected()
    assert hw_device.device_info is not None
    assert hw_device.device_info.valid


def test_open_close_cycles():
    device = BusPirateDevice(str(BUS_PIRATE_PORT))
    for _ in range(3):
        assert device.open()
        device.close()


def test_enter_and_reset_from_spi(hw_device: BusPirateDevice):
    assert hw_device.bb_enter_spi()
    assert hw_device.get_mode() == OperationalMode.BITBANG_SPI
    assert hw_device.reset()
    assert hw_device.get_mode() == OperationalMode.HIZ


@pytest.mark.parametrize(
    "method_name",
    [
        "cfg_power_supplies",
        "cfg_aux_pin",
        "cfg_pullups",
        "cfg_chip_select",
        "cfg_spi_pin_out",
        "cfg_spi_clk_idle",
        "cfg_spi_clk_edge",
    ],
)
def test_cfg(hw_spi: BinarySPI, method_name: str):
    method = getattr(hw_spi, method_name)
    assert method(True) == SPIStatus.OK
    assert method(False) == SPIStatus.OK


def test_clock_set_exact(hw_spi: BinarySPI):
    for frequency in SPI_SPEED_HZ:
        assert hw_spi.set_clock_frequency(frequency) == SPIStatus.CLOCK_SET_EQ
        assert hw_spi.get_clock_frequency() == frequency


@pytest.mark.parametrize("length", [1, 50, 500])
def test_loopback(hw_spi: BinarySPI, length: int):
    tx_data = bytes(i % 256 for i in range(length))
    rx_buffer = bytearray(length)

    assert hw_spi.read_write_bytes(tx_data, rx_buffer) == SPIStatus.OK
    assert rx_buffer == tx_data
