from __future__ import annotations

import threading
import time
import urllib.parse
from enum import Enum

import serial

from bus_pirate_spi.bp_constants import (
    BB_FAILURE,
    BB_SUCCESS,
    BBIO_BANNER,
    BBIO_INIT_REPEAT,
    BULK_TRANSFER_LENGTH_MASK,
    CFG_PERIPHERALS_MASK,
    CFG_SPI_MASK,
    CHIP_SELECT_MASK,
    SET_SPEED_MASK,
    BBIOCmd,
    SPICmd,
)

"""
pyserial URL handler emulating a Bus Pirate v3, for running the driver and its tests without hardware.

Open it with serial.serial_for_url("bpsim://"), or pass "bpsim://" as the port anywhere this package takes one
(importing bus_pirate_spi registers the handler).  Supported URL options:

- loopback=1|0: MISO wired to MOSI (default 1).  When 0, every byte clocked in reads as the miso value.
- miso=0xNN: value read on MISO when loopback is off (default 0xFF, an undriven line with pullups)
- mode=hiz|bbio|spi: mode the probe is in when the port opens (default hiz)
- hardware=, firmware=, bootloader=: version strings reported in the identity banner

Only the commands this package sends are emulated.  Timing is not: responses are available immediately.
"""


class EmulatedMode(Enum):
    TERMINAL = "hiz"
    BBIO = "bbio"
    SPI = "spi"


class BusPirateEmulator:
    """
    Protocol state machine of the probe.  Bytes go in through feed(), response bytes come back out.
    """

    def __init__(
        self,
        mode: EmulatedMode = EmulatedMode.TERMINAL,
        loopback: bool = True,
        miso: int = 0xFF,
        hardware: str = "v3.b",
        firmware: str = "v5.10",
        bootloader: str = "v4.4",
    ):
        self.mode = mode
        self.loopback = loopback
        self.miso = miso
        self.hardware = hardware
        self.firmware = firmware
        self.bootloader = bootloader

        # SPI mode hardware state, as the last accepted commands left it
        self.peripheral_cfg = 0
        self.spi_cfg = 0
        self.speed_code = 0
        self.cs_state = 1

        # Base opcodes (e.g. SPICmd.CFG_PERIPHERALS, or BBIOCmd.ENTER_SPI in bit-bang root) which will be refused.
        # Used by tests to exercise error paths.
        self.rejected_commands: set[int] = set()

        # Base opcode -> how many more of that command to accept before rejecting one.  See reject_nth().
        self._reject_countdown: dict[int, int] = {}

        # Every command byte received in binary SPI mode, bulk transfer payloads excluded
        self.command_log: list[int] = []

        # Every bulk transfer frame accepted, as (cs state during the frame, payload bytes)
        self.bulk_frames: list[tuple[int, bytes]] = []

        # Chip select level after each chip select command, in order
        self.cs_history: list[int] = []

        self._line = ""
        self._zero_count = 0
        self._bulk_remaining = 0
        self._bulk_payload = bytearray()

    def reject_nth(self, opcode: int, n: int) -> None:
        """
        Reject only the n-th command (counting from 1) with the given base opcode from now on.
        """
        self._reject_countdown[opcode] = n

    def _is_rejected(self, opcode: int) -> bool:
        if opcode in self.rejected_commands:
            return True

        countdown = self._reject_countdown.get(opcode)
        if countdown is None:
            return False
        if countdown <= 1:
            del self._reject_countdown[opcode]
            return True
        self._reject_countdown[opcode] = countdown - 1
        return False

    def banner_lines(self) -> list[str]:
        return [
            f"Bus Pirate {self.hardware}",
            f"Firmware {self.firmware} (r559)  Bootloader {self.bootloader}",
            "DEVID:0x0447 REVID:0x3046 (24FJ64GA002 B8)",
            "http://dangerousprototypes.com",
        ]

    def feed(self, data: bytes) -> bytes:
        """
        Process bytes sent by the host and return the probe's response
        """
        response = bytearray()
        for byte in data:
            if self.mode == EmulatedMode.TERMINAL:
                response += self._terminal_byte(byte)
            elif self.mode == EmulatedMode.BBIO:
                response += self._bbio_byte(byte)
            else:
                response += self._spi_byte(byte)
        return bytes(response)

    def _prompt(self, lines: list[str]) -> bytes:
        text = "\r\n" + "".join(line + "\r\n" for line in lines) + "HiZ>"
        return text.encode("ascii")

    def _terminal_byte(self, byte: int) -> bytes:
        if byte == BBIOCmd.ENTER_BBIO:
            self._zero_count += 1
            if self._zero_count >= BBIO_INIT_REPEAT:
                self._zero_count = 0
                self._line = ""
                self.mode = EmulatedMode.BBIO
                return BBIO_BANNER
            return b""

        self._zero_count = 0

        char = chr(byte)
        if char not in "\r\n":
            self._line += char
            return char.encode("ascii", errors="replace")

        command = self._line.strip()
        self._line = ""
        if command == "":
            return self._prompt([])
        elif command == "#":
            return self._prompt(["RESET", "", *self.banner_lines()])
        elif command == "i":
            return self._prompt(self.banner_lines())
        else:
            return self._prompt(["Syntax error at char 1"])

    def _bbio_byte(self, byte: int) -> bytes:
        if byte == BBIOCmd.ENTER_BBIO:
            return BBIO_BANNER
        elif byte == BBIOCmd.ENTER_SPI:
            if self._is_rejected(byte):
                # Stays in bit-bang root, which answers with its own banner
                return BBIO_BANNER
            self.mode = EmulatedMode.SPI
            return b"SPI1"
        elif byte == BBIOCmd.RESET:
            self.mode = EmulatedMode.TERMINAL
            self.peripheral_cfg = 0
            return bytes([BB_SUCCESS]) + self._prompt(self.banner_lines())[2:]

        # Other modes are not emulated, the probe ignores what it doesn't know
        return b""

    @staticmethod
    def _base_opcode(byte: int) -> int:
        if byte & ~CHIP_SELECT_MASK == SPICmd.CHIP_SELECT:
            return SPICmd.CHIP_SELECT
        elif byte & ~SET_SPEED_MASK == SPICmd.SET_SPEED:
            return SPICmd.SET_SPEED
        elif byte & 0xF0 in (SPICmd.BULK_TRANSFER, SPICmd.CFG_PERIPHERALS, SPICmd.CFG_SPI):
            return byte & 0xF0
        return byte

    def _spi_byte(self, byte: int) -> bytes:
        if self._bulk_remaining > 0:
            self._bulk_remaining -= 1
            self._bulk_payload.append(byte)
            if self._bulk_remaining == 0:
                self.bulk_frames.append((self.cs_state, bytes(self._bulk_payload)))
                self._bulk_payload = bytearray()
            return bytes([byte if self.loopback else self.miso])

        if byte == SPICmd.EXIT_TO_BBIO:
            self.mode = EmulatedMode.BBIO
            return BBIO_BANNER
        elif byte == SPICmd.MODE_STRING:
            return b"SPI1"

        self.command_log.append(byte)
        opcode = self._base_opcode(byte)
        if self._is_rejected(opcode):
            return bytes([BB_FAILURE])

        if opcode == SPICmd.CHIP_SELECT:
            self.cs_state = byte & CHIP_SELECT_MASK
            self.cs_history.append(self.cs_state)
        elif opcode == SPICmd.BULK_TRANSFER:
            self._bulk_remaining = (byte & BULK_TRANSFER_LENGTH_MASK) + 1
        elif opcode == SPICmd.CFG_PERIPHERALS:
            self.peripheral_cfg = byte & CFG_PERIPHERALS_MASK
        elif opcode == SPICmd.SET_SPEED:
            self.speed_code = byte & SET_SPEED_MASK
        elif opcode == SPICmd.CFG_SPI:
            self.spi_cfg = byte & CFG_SPI_MASK
        else:
            return bytes([BB_FAILURE])

        return bytes([BB_SUCCESS])


class Serial(serial.SerialBase):
    """
    Serial port backed by a BusPirateEmulator
    """

    def __init__(self, *args, **kwargs) -> None:
        self.emulator: BusPirateEmulator | None = None
        self._rx_buffer = bytearray()
        self._rx_ready = threading.Condition()
        super().__init__(*args, **kwargs)

    def open(self) -> None:
        if self.is_open:
            message = "Port is already open."
            raise serial.SerialException(message)
        if self._port is None:
            message = "Port must be configured before it can be used."
            raise serial.SerialException(message)

        self.emulator = self.from_url(self._port)
        self._rx_buffer = bytearray()
        self.is_open = True

    def close(self) -> None:
        with self._rx_ready:
            self.is_open = False
            self._rx_ready.notify_all()

    def from_url(self, url: str) -> BusPirateEmulator:
        parts = urllib.parse.urlsplit(url)
        if parts.scheme != "bpsim":
            message = f'expected a string in the form "bpsim://[?option[=value][&...]]": not starting with bpsim:// ({parts.scheme!r})'
            raise serial.SerialException(message)

        emulator = BusPirateEmulator()
        try:
            for option, values in urllib.parse.parse_qs(parts.query, True).items():
                value = values[0]
                if option == "loopback":
                    emulator.loopback = value not in ("0", "false", "no")
                elif option == "miso":
                    emulator.miso = int(value, 0) & 0xFF
                elif option == "mode":
                    emulator.mode = EmulatedMode(value.lower())
                elif option == "hardware":
                    emulator.hardware = value
                elif option == "firmware":
                    emulator.firmware = value
                elif option == "bootloader":
                    emulator.bootloader = value
                else:
                    message = f"unknown option: {option!r}"
                    raise ValueError(message)
        except ValueError as ex:
            message = f'expected a string in the form "bpsim://[?option[=value][&...]]": {ex}'
            raise serial.SerialException(message) from ex

        return emulator

    def _reconfigure_port(self) -> None:
        # Line settings have no effect on the emulator
        pass

    @property
    def in_waiting(self) -> int:
        if not self.is_open:
            raise serial.PortNotOpenError()
        with self._rx_ready:
            return len(self._rx_buffer)

    def read(self, size: int = 1) -> bytes:
        if not self.is_open:
            raise serial.PortNotOpenError()

        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        data = bytearray()
        with self._rx_ready:
            while len(data) < size and self.is_open:
                if self._rx_buffer:
                    taken = self._rx_buffer[: size - len(data)]
                    del self._rx_buffer[: len(taken)]
                    data += taken
                    continue

                if deadline is None:
                    self._rx_ready.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._rx_ready.wait(remaining)

        return bytes(data)

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise serial.PortNotOpenError()
        assert self.emulator is not None

        data = bytes(data)
        response = self.emulator.feed(data)
        with self._rx_ready:
            self._rx_buffer += response
            self._rx_ready.notify_all()
        return len(data)

    def reset_input_buffer(self) -> None:
        if not self.is_open:
            raise serial.PortNotOpenError()
        with self._rx_ready:
            self._rx_buffer.clear()

    def reset_output_buffer(self) -> None:
        if not self.is_open:
            raise serial.PortNotOpenError()
        # Writes are processed synchronously, there is never anything queued
