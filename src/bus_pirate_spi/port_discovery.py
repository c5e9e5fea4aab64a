from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import serial.tools.list_ports

from bus_pirate_spi.bp_constants import DEFAULT_VIDS_PIDS
from bus_pirate_spi.utils import BusPirateError, log

"""
Module for finding the serial ports that Bus Pirates are attached to.
"""


@dataclass
class DiscoveredPort:
    """
    Represents one serial port which looks like a Bus Pirate
    """

    # Name of the serial port, e.g. COM3 or /dev/ttyUSB0
    device: str

    # Vendor ID
    vid: int

    # Product ID
    pid: int

    # Serial number string of the USB-serial adapter, if it has one
    serial_number: str | None = None

    # Manufacturer string
    manufacturer: str | None = None

    # Human readable description from the OS
    description: str | None = None


def list_ports(vid_pids: Iterable[tuple[int, int]] | None = None) -> list[DiscoveredPort]:
    """
    List the serial ports on the system whose USB VID:PID matches a Bus Pirate's.

    Uses pyserial to do the hard work of talking to the OS.

    :param vid_pids: (VID, PID) pairs to accept.  Defaults to the adapters Bus Pirates ship with.
        Note that the v3 uses a stock FTDI chip, so other FTDI gadgets will match as well.
    """
    wanted = set(DEFAULT_VIDS_PIDS if vid_pids is None else vid_pids)

    ports = []
    for port_info in serial.tools.list_ports.comports():
        if port_info.vid is None or port_info.pid is None:
            # Not a USB device
            continue
        if (port_info.vid, port_info.pid) not in wanted:
            continue

        log.debug("Found candidate port %s (%04x:%04x)", port_info.device, port_info.vid, port_info.pid)
        ports.append(
            DiscoveredPort(
                device=port_info.device,
                vid=port_info.vid,
                pid=port_info.pid,
                serial_number=port_info.serial_number,
                manufacturer=port_info.manufacturer,
                description=port_info.description,
            )
        )

    return ports


def find_port(serial_number: str | None = None, vid_pids: Iterable[tuple[int, int]] | None = None) -> str:
    """
    Find the serial port of exactly one Bus Pirate.

    If no or multiple matches are found, throws an exception containing the reason.

    :param serial_number: Serial number of the adapter to use.  May be left as None if there is only one attached.
    :param vid_pids: (VID, PID) pairs to accept.  Defaults to the adapters Bus Pirates ship with.

    :return: Port name, to pass to BusPirateDevice
    """
    ports = list_ports(vid_pids)

    if len(ports) == 0:
        message = "No Bus Pirate serial ports found"
        raise BusPirateError(message)

    if serial_number is None:
        if len(ports) > 1:
            message = "Multiple Bus Pirate serial ports found but no serial number provided!"
            raise BusPirateError(message)
        return ports[0].device

    # Note: Testing on Windows, the serial number always gets converted to uppercase.
    for port in ports:
        if port.serial_number is not None and port.serial_number.lower() == serial_number.lower():
            return port.device

    if len(ports) == 1:
        message = "The only detected Bus Pirate does not have a matching serial number!"
    else:
        message = "Multiple Bus Pirates found but none matched the specified serial number!"
    raise BusPirateError(message)
