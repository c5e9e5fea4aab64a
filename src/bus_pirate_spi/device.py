from __future__ import annotations

import contextlib
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, overload

if TYPE_CHECKING:
    from types import TracebackType

    from typing_extensions import Self

from bus_pirate_spi.bp_constants import (
    BB_SUCCESS,
    BBIO_BANNER,
    BBIO_INIT_REPEAT,
    CONNECT_INFO_ATTEMPTS,
    CONNECT_INFO_RETRY_DELAY,
    KNOWN_BOOTLOADER_VERSIONS,
    KNOWN_FIRMWARE_VERSIONS,
    KNOWN_HARDWARE_VERSIONS,
    SPI_BANNER,
    SPI_MODE_STRING_LEN,
    TERMINAL_ECHO_NEWLINE_LEN,
    TERMINAL_INFO_CMD,
    TERMINAL_PING,
    TERMINAL_PING_COUNT,
    TERMINAL_PING_SETTLE_TIME,
    TERMINAL_PROMPT_REGEX,
    TERMINAL_RESET_CMD,
    TERMINAL_RESET_TOKEN,
    BBIOCmd,
)
from bus_pirate_spi.transport import SerialConfig, SerialTransport
from bus_pirate_spi.utils import (
    BusPirateError,
    ByteSequence,
    ProtocolMismatchError,
    ReadTimeoutError,
    SerialOpenError,
    log,
)

"""
Module containing the logic for getting the Bus Pirate into a known operating mode and exchanging commands with it.

The binary SPI engine built on top of this lives in binary_spi.py.
"""


class OperationalMode(Enum):
    """
    Enumeration of the modes the probe can be in.
    """

    HIZ = "HiZ"  # Terminal (human readable) mode, all pins high impedance
    BITBANG_ROOT = "BBIO"
    BITBANG_SPI = "SPI"
    BITBANG_I2C = "I2C"
    BITBANG_UART = "UART"
    BITBANG_1WIRE = "1WIRE"
    BITBANG_RAW_WIRE = "RAWWIRE"
    BITBANG_JTAG = "JTAG"
    INVALID = "Invalid"  # Not connected, or we don't know


@dataclass(frozen=True)
class DeviceInfo:
    """
    Identity of the connected probe, as printed by the terminal "i" command.

    Only trust the other fields when valid is True.
    """

    hardware_version: str = ""
    hardware_major: int = 0

    firmware_version: str = ""
    firmware_major: int = 0
    firmware_minor: int = 0

    bootloader_version: str = ""
    bootloader_major: int = 0
    bootloader_minor: int = 0

    # e.g. "0x0447"
    device_id: str = ""

    # e.g. "0x3046"
    revision_id: str = ""

    # Name of the probe's microcontroller, e.g. "24FJ64GA002 B8"
    mcu: str = ""

    # True only if all three version strings are ones this driver knows to work
    valid: bool = False


def _strip_non_digits(text: str) -> int:
    digits = re.sub(r"\D", "", text)
    return int(digits) if digits else 0


def _split_version(version: str) -> tuple[int, int]:
    """
    Split a "vX.Y" version string into (X, Y).

    This relies on the fixed layout: the major digit is at offset 1 and the minor number starts at offset 3.
    Strings in any other shape give meaningless numbers, which the version whitelist catches.
    """
    return _strip_non_digits(version[1:2]), _strip_non_digits(version[3:])


def parse_device_info(banner: str) -> DeviceInfo:
    """
    Parse the identity banner of the probe.

    Expected layout, CR/LF separated:
    Bus Pirate v3.b
    Firmware v5.10 (r559)  Bootloader v4.4
    DEVID:0x0447 REVID:0x3046 (24FJ64GA002 B8)

    :return: Parsed info.  valid is False if any version is not in the known good lists.
    """
    lines = [line for line in re.split(r"[\r\n]+", banner) if line.strip()]
    if len(lines) < 3:
        message = f"Expected at least 3 lines of device info but got {len(lines)}: {banner!r}"
        raise ProtocolMismatchError(message)

    hardware_tokens = lines[0].split()
    version_tokens = lines[1].split()
    id_tokens = lines[2].split()
    if len(hardware_tokens) < 3 or len(version_tokens) < 5 or len(id_tokens) < 2:
        message = f"Device info banner is not in the expected format: {banner!r}"
        raise ProtocolMismatchError(message)

    hardware_version = hardware_tokens[2]
    firmware_version = version_tokens[1]
    bootloader_version = version_tokens[4]

    # DEVID:0x0447 REVID:0x3046
    device_id = id_tokens[0].partition(":")[2]
    revision_id = id_tokens[1].partition(":")[2]
    mcu = " ".join(id_tokens[2:]).replace("(", "").replace(")", "")

    firmware_major, firmware_minor = _split_version(firmware_version)
    bootloader_major, bootloader_minor = _split_version(bootloader_version)

    valid = True
    if hardware_version not in KNOWN_HARDWARE_VERSIONS:
        log.warning("Unknown Bus Pirate hardware version %s", hardware_version)
        valid = False
    if firmware_version not in KNOWN_FIRMWARE_VERSIONS:
        log.warning("Unknown Bus Pirate firmware version %s", firmware_version)
        valid = False
    if bootloader_version not in KNOWN_BOOTLOADER_VERSIONS:
        log.warning("Unknown Bus Pirate bootloader version %s", bootloader_version)
        valid = False

    return DeviceInfo(
        hardware_version=hardware_version,
        hardware_major=_strip_non_digits(hardware_version),
        firmware_version=firmware_version,
        firmware_major=firmware_major,
        firmware_minor=firmware_minor,
        bootloader_version=bootloader_version,
        bootloader_major=bootloader_major,
        bootloader_minor=bootloader_minor,
        device_id=device_id,
        revision_id=revision_id,
        mcu=mcu,
        valid=valid,
    )


# Command framing
# ---------------------------------------------------------------------------------------------


def terminal_exchange(transport: SerialTransport, command: str, timeout: float | None = None) -> str:
    """
    Send a terminal mode command and return its output.

    The probe echoes the command, then prints "\\r\\n", the output, and a fresh prompt.  The echo and the prompt
    are removed.

    :param command: Command text, ending with "\\n"
    :param timeout: Deadline for the prompt to show up, in seconds
    """
    transport.flush()
    transport.write(command.encode("ascii"))
    raw = transport.read_until(TERMINAL_PROMPT_REGEX, timeout)

    echo_len = len(command.rstrip("\r\n")) + TERMINAL_ECHO_NEWLINE_LEN
    prompt_start = list(TERMINAL_PROMPT_REGEX.finditer(raw))[-1].start()
    return raw[echo_len:prompt_start].decode("ascii", errors="replace")


def binary_exchange(
    transport: SerialTransport, command: ByteSequence, response_length: int, timeout: float | None = None
) -> bytes:
    """
    Send a bit-bang mode command and read a fixed length response.
    """
    transport.flush()
    transport.write(command)
    return transport.read_exact(response_length, timeout)


# Reset strategies
# ---------------------------------------------------------------------------------------------
# We can't know for sure which mode the probe is in (a previous session may have died anywhere), and each mode
# needs a different reset command.  So these are tried in order until one works.
# Each one leaves the probe in terminal mode if it returns True.


def reset_terminal(transport: SerialTransport) -> bool:
    """
    Reset a probe that is sitting in terminal mode.
    """
    # Pinging gets rid of any half-typed command and gives us a fresh prompt
    for _ in range(TERMINAL_PING_COUNT):
        transport.write(TERMINAL_PING.encode("ascii"))
    time.sleep(TERMINAL_PING_SETTLE_TIME)

    try:
        response = terminal_exchange(transport, TERMINAL_RESET_CMD)
    except ReadTimeoutError:
        return False

    return TERMINAL_RESET_TOKEN in response


def reset_bitbang_root(transport: SerialTransport) -> bool:
    """
    Reset a probe that is sitting in the bit-bang root mode.
    """
    try:
        response = binary_exchange(transport, bytes([BBIOCmd.RESET]), 1)
    except ReadTimeoutError:
        return False

    if response[0] != BB_SUCCESS:
        return False

    # The probe reboots into terminal mode and prints its banner.  Swallow it, up to the prompt.
    with contextlib.suppress(ReadTimeoutError):
        transport.read_until(TERMINAL_PROMPT_REGEX)

    return True


def reset_bitbang_hw_mode(transport: SerialTransport) -> bool:
    """
    Reset a probe that is inside one of the bit-bang protocol modes (SPI, I2C, ...).

    These modes go back to bit-bang root on 0x00, from where reset_bitbang_root() can finish the job.
    """
    try:
        transport.flush()
        transport.write(bytes([BBIOCmd.ENTER_BBIO]))
        transport.read_until(BBIO_BANNER)
    except ReadTimeoutError:
        return False

    return reset_bitbang_root(transport)


ResetStrategy = Callable[[SerialTransport], bool]

RESET_STRATEGIES: tuple[ResetStrategy, ...] = (reset_terminal, reset_bitbang_root, reset_bitbang_hw_mode)


class BusPirateDevice:
    """
    Connection to a Bus Pirate, tracking which mode it is in.

    Precondition: calls must be serialized by the caller.  Only one command is in flight at a time.
    """

    def __init__(self, port: str, config: SerialConfig | None = None):
        """
        Create a BusPirateDevice.  Nothing is sent until open() is called.

        :param port: Serial port the probe is attached to, e.g. /dev/ttyUSB0 or COM6
        :param config: Serial line settings
        """
        self.transport = SerialTransport(port, config)

        self._current_mode = OperationalMode.INVALID
        self._device_info: DeviceInfo | None = None

    def __enter__(self) -> Self:
        if not self.open():
            message = f"Failed to connect to a Bus Pirate on {self.transport.port_name}"
            raise BusPirateError(message)
        return self

    def __exit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, traceback: TracebackType | None
    ) -> None:
        self.close()

    @property
    def current_mode(self) -> OperationalMode:
        return self._current_mode

    @property
    def device_info(self) -> DeviceInfo | None:
        """
        Result of the last get_info() call, or None if there hasn't been one since the last reset
        """
        return self._device_info

    def get_mode(self) -> OperationalMode:
        return self._current_mode

    def is_connected(self) -> bool:
        return self.transport.is_open and self._current_mode != OperationalMode.INVALID

    def open(self) -> bool:
        """
        Open the serial port and connect to the probe.

        :return: True if a probe with a known good version answered
        """
        if not self.transport.is_open:
            try:
                self.transport.open()
            except SerialOpenError as ex:
                log.error("%s", ex)
                return False

        if not self.connect():
            log.error("No Bus Pirate answered on %s", self.transport.port_name)
            self.close()
            return False

        log.info("Connected to Bus Pirate %s on %s", self._device_info.hardware_version, self.transport.port_name)
        return True

    def close(self) -> None:
        self.transport.close()
        self._current_mode = OperationalMode.INVALID
        self._device_info = None

    def connect(self) -> bool:
        """
        Reset the probe and check that it identifies itself as a known version.

        The identity query is retried because our receive buffer may still hold stale bytes from an earlier
        session.  The probe is the only reliable point to resynchronize on, so we ask again rather than flushing.
        """
        if not self.reset():
            return False

        for attempt in range(CONNECT_INFO_ATTEMPTS):
            if attempt > 0:
                time.sleep(CONNECT_INFO_RETRY_DELAY)

            if self.get_info().valid:
                return True

            log.info("Device info attempt %d of %d was not valid", attempt + 1, CONNECT_INFO_ATTEMPTS)

        return False

    def reset(self) -> bool:
        """
        Return the probe to terminal (HiZ) mode, whatever mode it is in now.
        """
        if not self.transport.is_open:
            log.error("Cannot reset Bus Pirate, port %s is not open", self.transport.port_name)
            return False

        for strategy in RESET_STRATEGIES:
            log.debug("Trying reset strategy %s", strategy.__name__)
            if strategy(self.transport):
                log.info("Bus Pirate reset to terminal mode by %s", strategy.__name__)
                self._current_mode = OperationalMode.HIZ
                return True

        log.warning("Bus Pirate did not respond to any reset sequence")
        self._device_info = None
        return False

    def get_info(self) -> DeviceInfo:
        """
        Query and parse the identity banner of the probe.  Must be in terminal mode.
        """
        try:
            banner = self.send_responsive_command(TERMINAL_INFO_CMD)
            info = parse_device_info(banner)
        except (ReadTimeoutError, ProtocolMismatchError) as ex:
            log.warning("Could not read device info: %s", ex)
            info = DeviceInfo()

        self._device_info = info
        return info

    def send_command(self, command: str | ByteSequence) -> None:
        """
        Send a command and ignore any response.

        :param command: Text for terminal mode, bytes for bit-bang modes
        """
        if isinstance(command, str):
            command = command.encode("ascii")

        self.transport.flush()
        self.transport.write(command)

    @overload
    def send_responsive_command(
        self, command: str, response_length: int = ..., timeout: float | None = ...
    ) -> str: ...

    @overload
    def send_responsive_command(
        self, command: ByteSequence, response_length: int = ..., timeout: float | None = ...
    ) -> bytes: ...

    def send_responsive_command(
        self, command: str | ByteSequence, response_length: int = 1, timeout: float | None = None
    ) -> str | bytes:
        """
        Send a command and return the response.

        Text commands use terminal framing: the response runs up to the next prompt, and the echoed command and
        prompt are stripped.  Byte commands use bit-bang framing: the response is exactly response_length bytes.

        :param response_length: Number of response bytes, for byte commands only
        :param timeout: Deadline in seconds.  Defaults to the transport's timeout.
        """
        if isinstance(command, str):
            return terminal_exchange(self.transport, command, timeout)
        return binary_exchange(self.transport, command, response_length, timeout)

    # Bit-bang mode transitions
    # ---------------------------------------------------------------------------------------------

    def bb_init(self) -> bool:
        """
        Enter the bit-bang root mode, starting from a clean reset.
        """
        if not self.transport.is_open:
            log.error("Cannot enter bit-bang mode, port %s is not open", self.transport.port_name)
            return False

        if not self.reset():
            return False

        # The probe may still be chewing on terminal input, so it wants the init byte many times over
        try:
            self.send_command(bytes([BBIOCmd.ENTER_BBIO]) * BBIO_INIT_REPEAT)
            self.transport.read_until(BBIO_BANNER)
        except ReadTimeoutError:
            log.warning("Bus Pirate did not enter bit-bang mode")
            return False

        self._current_mode = OperationalMode.BITBANG_ROOT
        log.info("Bus Pirate entered bit-bang mode")
        return True

    def bb_enter_spi(self) -> bool:
        """
        Enter the bit-bang SPI mode, going through bit-bang root first if needed.
        """
        if not self.transport.is_open:
            log.error("Cannot enter SPI mode, port %s is not open", self.transport.port_name)
            return False

        if self._current_mode != OperationalMode.BITBANG_ROOT and not self.bb_init():
            return False

        try:
            response = self.send_responsive_command(bytes([BBIOCmd.ENTER_SPI]), SPI_MODE_STRING_LEN)
        except ReadTimeoutError:
            log.warning("Bus Pirate did not answer the enter SPI command")
            return False

        if SPI_BANNER not in response:
            log.warning("Unexpected response to enter SPI command: %r", response)
            return False

        self._current_mode = OperationalMode.BITBANG_SPI
        log.info("Bus Pirate entered bit-bang SPI mode")
        return True

    def _unsupported_mode(self, mode: OperationalMode) -> bool:
        log.warning("Bit-bang %s mode is not supported by this driver", mode.value)
        return False

    def bb_i2c(self) -> bool:
        return self._unsupported_mode(OperationalMode.BITBANG_I2C)

    def bb_uart(self) -> bool:
        return self._unsupported_mode(OperationalMode.BITBANG_UART)

    def bb_1wire(self) -> bool:
        return self._unsupported_mode(OperationalMode.BITBANG_1WIRE)

    def bb_raw_wire(self) -> bool:
        return self._unsupported_mode(OperationalMode.BITBANG_RAW_WIRE)

    def bb_jtag(self) -> bool:
        return self._unsupported_mode(OperationalMode.BITBANG_JTAG)
