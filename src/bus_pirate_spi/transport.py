from __future__ import annotations

import concurrent.futures
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Union

if TYPE_CHECKING:
    from types import TracebackType

    from typing_extensions import Self

import serial

from bus_pirate_spi.bp_constants import DEFAULT_BAUDRATE, DEFAULT_TIMEOUT
from bus_pirate_spi.utils import (
    ByteSequence,
    ReadTimeoutError,
    SerialOpenError,
    SerialReadError,
    SerialWriteError,
    hexify,
    log,
)

"""
Module containing the serial transport used to talk to the Bus Pirate.

The transport turns pyserial's blocking byte I/O into requests with a hard deadline.  Each read is a race between
a reader task running on a dedicated worker thread and a timer (the deadline passed to Future.result()).  Whichever
finishes first wins; a cancelled reader is always stopped before the read call returns, so its bytes can never
show up in a later call.

Precondition: one transport has a single owner.  Calls must not be made from multiple threads at once.
"""

# Pattern accepted by read_until(): a compiled bytes regex, or a literal byte string
ReadPattern = Union["re.Pattern[bytes]", bytes]


@dataclass
class SerialConfig:
    # Baud rate of the serial link
    baudrate: int = DEFAULT_BAUDRATE

    # Character framing
    bytesize: int = serial.EIGHTBITS
    parity: str = serial.PARITY_NONE
    stopbits: float = serial.STOPBITS_ONE

    # Hardware (RTS/CTS) flow control
    rtscts: bool = False

    # Default deadline in seconds for reads that don't pass their own
    timeout: float = DEFAULT_TIMEOUT

    # How long the reader task blocks in one pyserial read before checking for cancellation.
    # Bounds how long a timed out read takes to actually stop.
    poll_interval: float = 0.005


class SerialTransport:
    """
    Timeout-bounded byte exchange over one serial connection.
    """

    def __init__(self, port: str, config: SerialConfig | None = None):
        """
        Create a SerialTransport.  The port is not opened until open() is called.

        :param port: Serial port to use, e.g. /dev/ttyUSB0 or COM6.  Any pyserial URL is accepted as well,
            e.g. loop:// or bpsim://
        :param config: Serial line settings.  Defaults to 115200 8N1.
        """
        self.port_name = port
        self.config = config if config is not None else SerialConfig()

        self._port: serial.SerialBase | None = None
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None

    def __enter__(self) -> Self:
        self.open()
        return self

    def __exit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, traceback: TracebackType | None
    ) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._port is not None and self._port.is_open

    @property
    def timeout(self) -> float:
        """
        Default read deadline, in seconds
        """
        return self.config.timeout

    @property
    def serial_port(self) -> serial.SerialBase | None:
        """
        Underlying pyserial port object, or None when closed
        """
        return self._port

    def open(self) -> None:
        """
        Open the serial port with the configured settings.
        """
        if self.is_open:
            message = f"Serial port {self.port_name} is already open!"
            raise SerialOpenError(message)

        try:
            port = serial.serial_for_url(self.port_name, do_not_open=True)
            port.baudrate = self.config.baudrate
            port.bytesize = self.config.bytesize
            port.parity = self.config.parity
            port.stopbits = self.config.stopbits
            port.rtscts = self.config.rtscts
            port.timeout = self.config.poll_interval
            port.open()
        except (serial.SerialException, ValueError) as ex:
            message = f"Failed to open serial port {self.port_name}: {ex}"
            raise SerialOpenError(message) from ex

        self._port = port
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="bp-serial-reader")
        log.info("Opened serial port %s at %d baud", self.port_name, self.config.baudrate)

    def close(self) -> None:
        """
        Close the serial port.  Does nothing if it isn't open.
        """
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

        if self._port is not None:
            self._port.close()
            self._port = None
            log.info("Closed serial port %s", self.port_name)

    def reset(self) -> None:
        """
        Close and reopen the connection with the same configuration.

        Used to recover when the state of the hardware on the other end is unknown.
        """
        log.info("Resetting serial port %s", self.port_name)
        self.close()
        self.open()

    def flush(self) -> None:
        """
        Drop any bytes queued in the OS buffers in either direction.
        """
        if not self.is_open:
            return

        assert self._port is not None
        self._port.reset_input_buffer()
        self._port.reset_output_buffer()

    def write(self, data: ByteSequence) -> int:
        """
        Send all of the given bytes.

        :return: Number of bytes written
        """
        if self._port is None:
            message = f"Cannot write to {self.port_name}, port is not open"
            raise SerialWriteError(message)

        log.debug("TX: %s", hexify(data))

        try:
            written = self._port.write(bytes(data))
        except serial.SerialException as ex:
            message = f"Write to {self.port_name} failed: {ex}"
            raise SerialWriteError(message) from ex

        if written is not None and written != len(data):
            message = f"Only wrote {written} of {len(data)} bytes to {self.port_name}"
            raise SerialWriteError(message)

        return len(data)

    def read_exact(self, length: int, timeout: float | None = None) -> bytes:
        """
        Read exactly the given number of bytes.

        :param length: Number of bytes to read
        :param timeout: Deadline in seconds.  Defaults to the configured timeout.

        :return: The bytes read
        """
        if length < 0:
            message = "Read length cannot be negative"
            raise ValueError(message)
        if length == 0:
            return b""

        def have_all_bytes(buffer: bytearray) -> bool:
            return len(buffer) >= length

        # Never ask for more than the remaining count, the next response must stay in the OS buffer
        return self._race_read(lambda buffer: length - len(buffer), have_all_bytes, timeout)

    def read_until(self, pattern: ReadPattern, timeout: float | None = None) -> bytes:
        """
        Read until the given pattern appears in the received data.

        The match is done over the bytes received since the start of this call only.
        Bytes are taken one at a time, so anything received after the match stays buffered for the next read.

        :param pattern: Compiled bytes regex, or a literal byte string to look for
        :param timeout: Deadline in seconds.  Defaults to the configured timeout.

        :return: All bytes received, up to and including the byte that completed the match
        """
        regex = re.compile(re.escape(pattern)) if isinstance(pattern, (bytes, bytearray)) else pattern

        def pattern_found(buffer: bytearray) -> bool:
            return regex.search(buffer) is not None

        return self._race_read(lambda buffer: 1, pattern_found, timeout)

    def _race_read(
        self,
        bytes_wanted: Callable[[bytearray], int],
        is_complete: Callable[[bytearray], bool],
        timeout: float | None,
    ) -> bytes:
        """
        Run a reader task against a timer.

        :param bytes_wanted: Returns how many bytes the reader should ask pyserial for next
        :param is_complete: Returns true once the accumulated buffer satisfies the read
        :param timeout: Deadline in seconds, or None for the configured default
        """
        if self._port is None or self._executor is None:
            message = f"Cannot read from {self.port_name}, port is not open"
            raise SerialReadError(message)

        if timeout is None:
            timeout = self.config.timeout

        cancel_event = threading.Event()
        future = self._executor.submit(self._reader_task, bytes_wanted, is_complete, cancel_event)

        try:
            result = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            # Stop the reader and wait for it, so that nothing it reads later can leak into another call
            cancel_event.set()
            concurrent.futures.wait([future])
            if future.exception() is None and future.result():
                log.debug("RX (discarded after timeout): %s", hexify(future.result()))
            message = f"Read from {self.port_name} timed out after {timeout:.3f} s"
            raise ReadTimeoutError(message) from None
        except (serial.SerialException, OSError) as ex:
            message = f"Read from {self.port_name} failed: {ex}"
            raise SerialReadError(message) from ex

        log.debug("RX: %s", hexify(result))
        return result

    def _reader_task(
        self,
        bytes_wanted: Callable[[bytearray], int],
        is_complete: Callable[[bytearray], bool],
        cancel_event: threading.Event,
    ) -> bytes:
        """
        Runs on the reader thread.  Accumulates bytes until the read is complete or it is cancelled.

        :return: The accumulated bytes.  When cancelled, whatever was read so far (for logging only).
        """
        port = self._port
        assert port is not None

        buffer = bytearray()
        while not cancel_event.is_set():
            # Blocks for at most the poll interval, so cancellation is noticed quickly
            chunk = port.read(bytes_wanted(buffer))
            if not chunk:
                continue

            buffer.extend(chunk)
            if is_complete(buffer):
                return bytes(buffer)

        return bytes(buffer)
