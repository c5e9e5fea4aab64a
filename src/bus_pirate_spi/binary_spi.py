from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from math import ceil
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bus_pirate_spi.device import BusPirateDevice

from bus_pirate_spi.bp_constants import (
    BB_SUCCESS,
    CFG_PERIPHERALS_MASK,
    CFG_SPI_MASK,
    CHIP_SELECT_MASK,
    MAX_BULK_TRANSFER_LEN,
    SET_SPEED_MASK,
    SPI_SPEED_HZ,
    PeripheralCfg,
    SPICfg,
    SPICmd,
    SPISpeed,
)
from bus_pirate_spi.utils import ByteSequence, ReadTimeoutError, log

"""
Module containing the SPI controller (master) driver which uses the Bus Pirate's binary SPI mode.

The probe's configuration registers are write-only, so this driver keeps a shadow copy of each one.  A shadow
register only changes once the probe has acknowledged the write.
"""


class SPIStatus(Enum):
    """
    Result of a BinarySPI operation.
    """

    OK = "ok"
    FAIL = "fail"

    # Clock frequency results.  LT and GT say whether the achieved clock is lower or higher than requested.
    CLOCK_SET_EQ = "clock set equal"
    CLOCK_SET_LT = "clock set lower"
    CLOCK_SET_GT = "clock set higher"

    INVALID_PARAM = "invalid parameter"
    NOT_SUPPORTED = "not supported"
    NOT_INITIALIZED = "not initialized"
    FAILED_CHIP_SELECT_WRITE = "failed chip select write"
    FAILED_READ = "failed read"


class ChipSelectMode(Enum):
    """
    Who drives chip select during a bulk transfer.
    """

    # The caller drives it with set_chip_select()
    MANUAL = "manual"

    # Asserted before the transfer and released after it
    AUTO_AFTER_TRANSFER = "auto_after_transfer"

    # As AUTO_AFTER_TRANSFER, and additionally pulsed high between each framed chunk
    AUTO_BETWEEN_TRANSFER = "auto_between_transfer"


class ChipSelectState(IntEnum):
    # Chip select is active low
    ASSERTED = 0
    RELEASED = 1


class SPIClockMode(Enum):
    """
    Standard SPI clock modes.

    Values have the form (clock idles high, data valid on the first clock edge).
    """

    MODE_0 = (False, True)
    MODE_1 = (False, False)
    MODE_2 = (True, True)
    MODE_3 = (True, False)


class BitOrder(Enum):
    MSB_FIRST = "msb"
    LSB_FIRST = "lsb"


@dataclass
class SPISetup:
    # Requested SCLK frequency in Hz.  The nearest rate the probe supports is used.
    frequency: int = 1_000_000

    # Frequency error in Hz which still counts as an exact match
    tolerance: int = 0

    clock_mode: SPIClockMode = SPIClockMode.MODE_0

    # The probe always shifts 8 bit words MSB first.  These are accepted for interface compatibility only.
    bit_order: BitOrder = BitOrder.MSB_FIRST
    word_size: int = 8

    cs_mode: ChipSelectMode = ChipSelectMode.AUTO_AFTER_TRANSFER


@dataclass
class ShadowRegisters:
    """
    Last acknowledged value of each write-only probe register
    """

    peripheral_cfg: int = 0
    spi_cfg: int = 0
    cs_state: int = ChipSelectState.RELEASED
    speed_code: int = SPISpeed.SPEED_30KHZ


@dataclass
class TXRXPacket:
    """
    One SPI transaction.  A transfer clocks max(write_length, read_length) bytes; missing write bytes are sent as 0.
    """

    opcode: int = SPICmd.BULK_TRANSFER
    write_length: int = 0
    read_length: int = 0
    tx_data: ByteSequence = b""

    # Filled in by the transfer.  After a failure this holds the bytes received before the failing chunk.
    rx_data: bytearray = field(default_factory=bytearray)


def select_speed(frequency: int) -> SPISpeed:
    """
    Pick the supported SPI clock rate nearest to the given frequency.  Ties go to the lower rate.
    """
    return SPISpeed(min(SPISpeed, key=lambda code: (abs(SPI_SPEED_HZ[code] - frequency), SPI_SPEED_HZ[code])))


class BinarySPI:
    """
    Driver which uses a Bus Pirate in binary SPI controller mode.

    Precondition: calls must be serialized by the caller, and nothing else may use the device meanwhile.
    """

    def __init__(self, device: BusPirateDevice):
        """
        Create a BinarySPI.  The probe is not touched until init() is called.

        :param device: Connected Bus Pirate
        """
        self.device = device

        self._registers = ShadowRegisters()
        self._cs_mode = ChipSelectMode.AUTO_AFTER_TRANSFER
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def registers(self) -> ShadowRegisters:
        """
        Copy of the shadow registers
        """
        return dataclasses.replace(self._registers)

    @property
    def cs_mode(self) -> ChipSelectMode:
        return self._cs_mode

    def init(self, setup: SPISetup | None = None) -> SPIStatus:
        """
        Put the probe in SPI mode and program every configuration register.

        Power is turned on, the SPI pins are driven at 3.3V, pullups are turned off, and chip select is enabled
        and released.  Pullups must stay off: without an external pull voltage they couple MOSI into MISO.

        :return: OK if every register write was acknowledged and the achieved clock is not faster than requested
        """
        if setup is None:
            setup = SPISetup()

        self._initialized = False

        if not self.device.bb_enter_spi():
            log.error("Could not put Bus Pirate in SPI mode")
            return SPIStatus.FAIL

        # The probe's registers were reset along with the mode, start the shadows from scratch
        self._registers = ShadowRegisters()
        self._cs_mode = setup.cs_mode

        clock_idle_high, first_edge = setup.clock_mode.value
        steps = (
            ("power supplies", lambda: self._update_peripheral_cfg(PeripheralCfg.POWER, True)),
            ("pin output", lambda: self._update_spi_cfg(SPICfg.PIN_OUTPUT_3V3, True)),
            ("pullups", lambda: self._update_peripheral_cfg(PeripheralCfg.PULLUPS, False)),
            ("chip select pin", lambda: self._update_peripheral_cfg(PeripheralCfg.CS_PIN, True)),
            ("chip select", lambda: self._write_chip_select(ChipSelectState.RELEASED)),
            ("clock idle", lambda: self._update_spi_cfg(SPICfg.CLK_IDLE_HIGH, clock_idle_high)),
            ("clock edge", lambda: self._update_spi_cfg(SPICfg.CLK_EDGE_ACTIVE_TO_IDLE, first_edge)),
        )
        for name, step in steps:
            if step() != SPIStatus.OK:
                log.error("Failed to configure SPI %s", name)
                return SPIStatus.FAIL

        clock_status = self._write_clock_frequency(setup.frequency, setup.tolerance)
        if clock_status not in (SPIStatus.CLOCK_SET_EQ, SPIStatus.CLOCK_SET_LT):
            log.error("Could not set an SPI clock of at most %d Hz (%s)", setup.frequency, clock_status.value)
            return SPIStatus.FAIL

        self._initialized = True
        log.info("SPI initialized at %d Hz, %s", self.get_clock_frequency(), setup.clock_mode.name)
        return SPIStatus.OK

    def deinit(self) -> SPIStatus:
        """
        Return the probe to terminal mode.
        """
        self._initialized = False
        self._registers = ShadowRegisters()

        if not self.device.reset():
            return SPIStatus.FAIL
        return SPIStatus.OK

    # Register access
    # ---------------------------------------------------------------------------------------------

    def _round_trip(self, command: int) -> bool:
        """
        Send a one byte configuration command and check that the probe acknowledged it.
        """
        try:
            response = self.device.send_responsive_command(bytes([command]))
        except ReadTimeoutError:
            log.warning("No response from Bus Pirate to command 0x%02x", command)
            return False

        if response[0] != BB_SUCCESS:
            log.warning("Bus Pirate rejected command 0x%02x", command)
            return False

        return True

    def _write_peripheral_cfg(self, value: int) -> SPIStatus:
        value = int(value) & CFG_PERIPHERALS_MASK
        if not self._round_trip(SPICmd.CFG_PERIPHERALS | value):
            return SPIStatus.FAIL
        self._registers.peripheral_cfg = value
        return SPIStatus.OK

    def _write_spi_cfg(self, value: int) -> SPIStatus:
        value = int(value) & CFG_SPI_MASK
        if not self._round_trip(SPICmd.CFG_SPI | value):
            return SPIStatus.FAIL
        self._registers.spi_cfg = value
        return SPIStatus.OK

    def _update_peripheral_cfg(self, flag: PeripheralCfg, enabled: bool) -> SPIStatus:
        value = self._registers.peripheral_cfg | flag if enabled else self._registers.peripheral_cfg & ~flag
        return self._write_peripheral_cfg(value)

    def _update_spi_cfg(self, flag: SPICfg, enabled: bool) -> SPIStatus:
        value = self._registers.spi_cfg | flag if enabled else self._registers.spi_cfg & ~flag
        return self._write_spi_cfg(value)

    def _write_chip_select(self, state: int) -> SPIStatus:
        state = int(state) & CHIP_SELECT_MASK
        if not self._round_trip(SPICmd.CHIP_SELECT | state):
            return SPIStatus.FAILED_CHIP_SELECT_WRITE
        self._registers.cs_state = state
        return SPIStatus.OK

    def _write_clock_frequency(self, frequency: int, tolerance: int) -> SPIStatus:
        if frequency <= 0 or tolerance < 0:
            return SPIStatus.INVALID_PARAM

        speed = select_speed(frequency)
        if not self._round_trip(SPICmd.SET_SPEED | (speed & SET_SPEED_MASK)):
            return SPIStatus.FAIL
        self._registers.speed_code = speed

        achieved = SPI_SPEED_HZ[speed]
        if abs(achieved - frequency) <= tolerance:
            return SPIStatus.CLOCK_SET_EQ
        elif achieved < frequency:
            return SPIStatus.CLOCK_SET_LT
        else:
            return SPIStatus.CLOCK_SET_GT

    # Configuration
    # ---------------------------------------------------------------------------------------------

    def cfg_power_supplies(self, enabled: bool) -> SPIStatus:
        """
        Turn the probe's 3.3V and 5V supply outputs on or off.
        """
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._update_peripheral_cfg(PeripheralCfg.POWER, enabled)

    def cfg_aux_pin(self, high: bool) -> SPIStatus:
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._update_peripheral_cfg(PeripheralCfg.AUX_PIN, high)

    def cfg_pullups(self, enabled: bool) -> SPIStatus:
        """
        Turn the on-board pullup resistors on or off.

        Note: the pullups pull to the voltage on the Vpu pin.  Without one connected, enabling them
        couples MOSI into MISO.
        """
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._update_peripheral_cfg(PeripheralCfg.PULLUPS, enabled)

    def cfg_chip_select(self, enabled: bool) -> SPIStatus:
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._update_peripheral_cfg(PeripheralCfg.CS_PIN, enabled)

    def cfg_spi_pin_out(self, drive_3v3: bool) -> SPIStatus:
        """
        Select between driven 3.3V outputs (True) and open drain outputs (False).
        """
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._update_spi_cfg(SPICfg.PIN_OUTPUT_3V3, drive_3v3)

    def cfg_spi_clk_idle(self, idle_high: bool) -> SPIStatus:
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._update_spi_cfg(SPICfg.CLK_IDLE_HIGH, idle_high)

    def cfg_spi_clk_edge(self, active_to_idle: bool) -> SPIStatus:
        """
        :param active_to_idle: True to change output on the active-to-idle clock transition
            (data valid on the first edge), False for idle-to-active.
        """
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._update_spi_cfg(SPICfg.CLK_EDGE_ACTIVE_TO_IDLE, active_to_idle)

    def set_peripheral_mode(self, peripheral: str, mode: str) -> SPIStatus:
        # The probe has no DMA or interrupt driven transfer modes to select
        return SPIStatus.NOT_SUPPORTED

    def set_chip_select(self, state: int) -> SPIStatus:
        """
        Drive the chip select line.

        :param state: ChipSelectState.ASSERTED (low) or ChipSelectState.RELEASED (high)
        """
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._write_chip_select(state)

    def set_chip_select_control_mode(self, mode: ChipSelectMode) -> SPIStatus:
        self._cs_mode = mode
        return SPIStatus.OK

    def set_clock_frequency(self, frequency: int, tolerance: int = 0) -> SPIStatus:
        """
        Set the SCLK frequency to the nearest rate the probe supports.

        :param frequency: Requested frequency in Hz
        :param tolerance: Error in Hz which still counts as an exact match

        :return: CLOCK_SET_EQ, or CLOCK_SET_LT/CLOCK_SET_GT if the achieved clock is lower/higher than requested.
            FAIL if the probe rejected the command, in which case the clock is unchanged.
        """
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED
        return self._write_clock_frequency(frequency, tolerance)

    def get_clock_frequency(self) -> int:
        """
        Get the SCLK frequency in Hz, as last acknowledged by the probe
        """
        return SPI_SPEED_HZ[self._registers.speed_code]

    # Data transfer
    # ---------------------------------------------------------------------------------------------

    def write_bytes(self, tx_data: ByteSequence | None) -> SPIStatus:
        """
        Write bytes to the SPI bus, discarding whatever is read back.
        """
        if tx_data is None or len(tx_data) == 0:
            return SPIStatus.INVALID_PARAM

        packet = TXRXPacket(write_length=len(tx_data), read_length=0, tx_data=tx_data)
        return self.bulk_transfer(packet)

    def read_bytes(self, rx_buffer: bytearray | None, length: int | None = None) -> SPIStatus:
        """
        Read bytes from the SPI bus, sending zeroes.

        :param rx_buffer: Buffer to read into
        :param length: Number of bytes to read.  Defaults to the length of rx_buffer.
        """
        if rx_buffer is None:
            return SPIStatus.INVALID_PARAM
        if length is None:
            length = len(rx_buffer)
        if length <= 0 or length > len(rx_buffer):
            return SPIStatus.INVALID_PARAM

        packet = TXRXPacket(write_length=0, read_length=length)
        status = self.bulk_transfer(packet)
        rx_buffer[: len(packet.rx_data)] = packet.rx_data
        return status

    def read_write_bytes(
        self, tx_data: ByteSequence | None, rx_buffer: bytearray | None, length: int | None = None
    ) -> SPIStatus:
        """
        Full duplex transfer: write tx_data while reading into rx_buffer.

        :param length: Number of bytes to transfer.  Defaults to the length of tx_data.
        """
        if tx_data is None or rx_buffer is None:
            return SPIStatus.INVALID_PARAM
        if length is None:
            length = len(tx_data)
        if length <= 0 or length > len(tx_data) or length > len(rx_buffer):
            return SPIStatus.INVALID_PARAM

        packet = TXRXPacket(write_length=length, read_length=length, tx_data=tx_data)
        status = self.bulk_transfer(packet)
        rx_buffer[: len(packet.rx_data)] = packet.rx_data
        return status

    def bulk_transfer(self, packet: TXRXPacket) -> SPIStatus:
        """
        Run one SPI transaction, framed into bulk transfer commands of at most 16 bytes each.

        Unless the chip select mode is MANUAL, chip select is asserted before the first chunk and released after
        the last one.
        """
        if not self._initialized:
            return SPIStatus.NOT_INITIALIZED

        length = max(packet.write_length, packet.read_length)
        if length <= 0 or packet.write_length > len(packet.tx_data):
            return SPIStatus.INVALID_PARAM

        tx_data = bytes(packet.tx_data[: packet.write_length]).ljust(length, b"\x00")
        packet.rx_data.clear()

        auto_cs = self._cs_mode != ChipSelectMode.MANUAL
        if auto_cs and self._write_chip_select(ChipSelectState.ASSERTED) != SPIStatus.OK:
            return SPIStatus.FAILED_CHIP_SELECT_WRITE

        num_chunks = ceil(length / MAX_BULK_TRANSFER_LEN)
        for chunk_index in range(num_chunks):
            if chunk_index > 0 and self._cs_mode == ChipSelectMode.AUTO_BETWEEN_TRANSFER:
                if (
                    self._write_chip_select(ChipSelectState.RELEASED) != SPIStatus.OK
                    or self._write_chip_select(ChipSelectState.ASSERTED) != SPIStatus.OK
                ):
                    log.error("Could not pulse chip select before chunk %d of %d", chunk_index + 1, num_chunks)
                    self._write_chip_select(ChipSelectState.RELEASED)
                    return SPIStatus.FAILED_CHIP_SELECT_WRITE

            start = chunk_index * MAX_BULK_TRANSFER_LEN
            chunk = tx_data[start : start + MAX_BULK_TRANSFER_LEN]
            if not self._transfer_chunk(packet.opcode, chunk, packet.rx_data):
                log.error(
                    "SPI transfer failed in chunk %d of %d, %d of %d bytes received",
                    chunk_index + 1,
                    num_chunks,
                    len(packet.rx_data),
                    length,
                )
                if auto_cs:
                    self._write_chip_select(ChipSelectState.RELEASED)
                return SPIStatus.FAILED_READ

        if auto_cs and self._write_chip_select(ChipSelectState.RELEASED) != SPIStatus.OK:
            return SPIStatus.FAILED_CHIP_SELECT_WRITE

        return SPIStatus.OK

    def _transfer_chunk(self, opcode: int, chunk: bytes, rx_data: bytearray) -> bool:
        """
        Send one framed chunk and append the bytes clocked in to rx_data.
        """
        if not self._round_trip(opcode | (len(chunk) - 1)):
            return False

        transport = self.device.transport
        try:
            transport.write(chunk)
            rx_data.extend(transport.read_exact(len(chunk)))
        except ReadTimeoutError:
            log.warning("Bus Pirate did not return all %d bytes of the chunk", len(chunk))
            return False

        return True
