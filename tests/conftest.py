from __future__ import annotations

from typing import Iterator

import pytest

import bus_pirate_spi
from bus_pirate_spi.protocol_bpsim import BusPirateEmulator

"""
Shared fixtures.  Everything here runs against the bpsim:// emulated probe, so no hardware is needed.
"""

# Short enough to keep the reset cascade quick, long enough for the emulator to always answer in time
TEST_TIMEOUT = 0.1  # s


def get_emulator(device: bus_pirate_spi.BusPirateDevice) -> BusPirateEmulator:
    """
    Get the emulator behind a device opened on a bpsim:// port
    """
    serial_port = device.transport.serial_port
    assert serial_port is not None
    return serial_port.emulator


@pytest.fixture()
def serial_config() -> bus_pirate_spi.SerialConfig:
    return bus_pirate_spi.SerialConfig(timeout=TEST_TIMEOUT)


@pytest.fixture()
def device(serial_config: bus_pirate_spi.SerialConfig) -> Iterator[bus_pirate_spi.BusPirateDevice]:
    """
    Device connected to an emulated probe in terminal mode
    """
    with bus_pirate_spi.BusPirateDevice("bpsim://", serial_config) as dev:
        yield dev


@pytest.fixture()
def emulator(device: bus_pirate_spi.BusPirateDevice) -> BusPirateEmulator:
    return get_emulator(device)


@pytest.fixture()
def spi(device: bus_pirate_spi.BusPirateDevice) -> bus_pirate_spi.BinarySPI:
    """
    Initialized SPI driver with default settings (1MHz, mode 0, chip select automatic)
    """
    spi = bus_pirate_spi.BinarySPI(device)
    assert spi.init(bus_pirate_spi.SPISetup()) == bus_pirate_spi.SPIStatus.OK
    return spi
