"""
Driver for using a Bus Pirate v3/v4 as an SPI controller from Python, through its binary (bit-bang) mode.

Typical use:

    with bus_pirate_spi.BusPirateDevice("/dev/ttyUSB0") as device:
        spi = bus_pirate_spi.BinarySPI(device)
        spi.init(bus_pirate_spi.SPISetup(frequency=1_000_000))
        ...

Importing this package also registers the bpsim:// pyserial URL handler, which emulates a probe.
"""

import serial

from bus_pirate_spi import binary_spi, device, port_discovery, transport
from bus_pirate_spi.binary_spi import (
    BinarySPI,
    BitOrder,
    ChipSelectMode,
    ChipSelectState,
    ShadowRegisters,
    SPIClockMode,
    SPISetup,
    SPIStatus,
    TXRXPacket,
)
from bus_pirate_spi.bp_constants import *
from bus_pirate_spi.device import BusPirateDevice, DeviceInfo, OperationalMode
from bus_pirate_spi.port_discovery import DiscoveredPort, find_port, list_ports
from bus_pirate_spi.transport import SerialConfig, SerialTransport
from bus_pirate_spi.utils import (
    BusPirateConnectionError,
    BusPirateError,
    ByteSequence,
    ProtocolMismatchError,
    ReadTimeoutError,
    SerialOpenError,
    SerialReadError,
    SerialWriteError,
)

# pyserial looks up URL schemes as modules named protocol_<scheme> in these packages
if "bus_pirate_spi" not in serial.protocol_handler_packages:
    serial.protocol_handler_packages.append("bus_pirate_spi")
