import binascii
import contextlib
import dataclasses
import enum
import logging
import sys
from typing import Annotated, Optional, cast

import click
import rich
import serial
import typer
from serial.tools import miniterm

import bus_pirate_spi
from bus_pirate_spi.bp_constants import DEFAULT_BAUDRATE, DEFAULT_TIMEOUT, SPI_SPEED_HZ
from bus_pirate_spi.utils import log

app = typer.Typer(help="Bus Pirate SPI CLI -- find Bus Pirate probes and use them as an SPI controller")


# Global options (passed before the subcommand)
# ---------------------------------------------------------------------------------------------

PortOption = typer.Option(
    "-p",
    "--port",
    help="Serial port of the Bus Pirate, e.g. /dev/ttyUSB0, COM6, or a pyserial URL such as bpsim://.  "
    "Found automatically if there is only one Bus Pirate attached.",
    show_default=False,
)
SerialNumOption = typer.Option(
    "-S", "--serno", help="Serial number string of the USB-serial adapter to connect to, when not giving --port."
)
BaudrateOption = typer.Option("-b", "--baudrate", min=1, help="Serial baudrate.")
TimeoutOption = typer.Option("-t", "--timeout", min=0.001, help="Timeout for each response from the probe, in seconds.")
VerboseOption = typer.Option("-v", "--verbose", help="Enable verbose logging")


@dataclasses.dataclass
class GlobalOptions:
    port: str | None
    serial_number: str | None
    baudrate: int
    timeout: float


# Note: we know that this value will always be set via the global callback before any of the CLI commands run.
# However, mypy doesn't and will generate errors that it might be None.  So, we annotate it as always having
# a value even though it's None initially.
global_opt: GlobalOptions = cast(GlobalOptions, None)


@app.callback()
def handle_global_options(
    port: Annotated[Optional[str], PortOption] = None,
    serial_number: Annotated[Optional[str], SerialNumOption] = None,
    baudrate: Annotated[int, BaudrateOption] = DEFAULT_BAUDRATE,
    timeout: Annotated[float, TimeoutOption] = DEFAULT_TIMEOUT,
    verbose: Annotated[bool, VerboseOption] = False,
) -> None:
    # Set global log level based on 'verbose'
    log_level = logging.INFO if verbose else logging.WARN
    logging.basicConfig(level=log_level)
    log.setLevel(log_level)

    # Save other options
    global global_opt  # noqa: PLW0603
    global_opt = GlobalOptions(port, serial_number, baudrate, timeout)


def get_port_name() -> str:
    """
    Get the port to use, from --port or by searching for a Bus Pirate.
    """
    if global_opt.port is not None:
        return global_opt.port

    try:
        return bus_pirate_spi.find_port(global_opt.serial_number)
    except bus_pirate_spi.BusPirateError as ex:
        message = f"{ex}.  Pass the port to use with --port."
        raise typer.BadParameter(message) from None


def open_device() -> bus_pirate_spi.BusPirateDevice:
    """
    Create a device object for the selected port.  Use it as a context manager to connect.
    """
    config = bus_pirate_spi.SerialConfig(baudrate=global_opt.baudrate, timeout=global_opt.timeout)
    return bus_pirate_spi.BusPirateDevice(get_port_name(), config)


def open_port(device: bus_pirate_spi.BusPirateDevice) -> None:
    """
    Open the serial port of a device without connecting to the probe, exiting with an error if that fails.
    """
    try:
        device.transport.open()
    except bus_pirate_spi.SerialOpenError as ex:
        rich.print(f"[red]Could not open serial port: {ex}[/red]")
        sys.exit(1)


# Scan command
# ---------------------------------------------------------------------------------------------


@app.command(help="Scan for serial ports which look like Bus Pirates")
def scan() -> None:
    ports = bus_pirate_spi.list_ports()

    if len(ports) == 0:
        print("No serial ports found on the system that look like a Bus Pirate!")
        return

    print("Detected Ports:")
    for port in ports:
        rich.print(
            f"- [bold]{port.device}[/bold] [bold yellow]{port.vid:04x}[/bold yellow]:[bold yellow]{port.pid:04x}[/bold yellow]",
            end="",
        )
        rich.print(f" ([bold]SerNo:[/bold] {port.serial_number}) ([bold]Name:[/bold] {port.description})")


# Info command
# ---------------------------------------------------------------------------------------------


@app.command(help="Connect to the Bus Pirate and display its hardware and firmware versions")
def info() -> None:
    with open_device() as device:
        device_info = cast(bus_pirate_spi.DeviceInfo, device.device_info)

        rich.print(f"[bold]Port:[/bold] {device.transport.port_name}")
        rich.print(f"[bold]Hardware:[/bold] {device_info.hardware_version}")
        rich.print(f"[bold]Firmware:[/bold] {device_info.firmware_version}")
        rich.print(f"[bold]Bootloader:[/bold] {device_info.bootloader_version}")
        rich.print(
            f"[bold]MCU:[/bold] {device_info.mcu} ([bold]DEVID:[/bold] {device_info.device_id} "
            f"[bold]REVID:[/bold] {device_info.revision_id})"
        )


# Reset command
# ---------------------------------------------------------------------------------------------


@app.command(help="Return the Bus Pirate to terminal mode, whatever mode it was left in")
def reset() -> None:
    device = open_device()
    open_port(device)
    try:
        if not device.reset():
            rich.print("[red]Bus Pirate did not respond to any reset sequence[/red]")
            sys.exit(1)
    finally:
        device.close()

    print("Bus Pirate is in terminal mode.")


# spi-transaction command
# ---------------------------------------------------------------------------------------------


SPISendDataArgument = typer.Argument(
    help="Data to send on the MOSI line during the SPI transaction.  Must be a string in hex format, e.g. '0abc'."
)


SPIFreqOption = typer.Option(
    "--frequency",
    "-f",
    min=SPI_SPEED_HZ[0],
    max=SPI_SPEED_HZ[-1],
    help="SPI frequency to use, in Hz.  The nearest supported rate is used.  "
    "The command fails if that rate is faster than requested.",
)


# Incredibly annoyingly, Typer has no way to use an Enum to map between names and values.
# https://github.com/tiangolo/typer/issues/151
# So we have to use a workaround by dropping down to the underlying Click
SPIModeOption = typer.Option(
    "--mode",
    "-m",
    help="SPI clock mode to use for the transfer",
    click_type=click.Choice(bus_pirate_spi.SPIClockMode._member_names_, case_sensitive=False),  # noqa: SLF001
    show_default=False,
)
CSModeOption = typer.Option(
    "--cs-mode",
    help="How chip select is driven during the transfer",
    click_type=click.Choice(bus_pirate_spi.ChipSelectMode._member_names_, case_sensitive=False),  # noqa: SLF001
    show_default=False,
)


@app.command(help="Perform a transaction over the SPI bus")
def spi_transaction(
    bytes_to_send: Annotated[str, SPISendDataArgument],
    freq: Annotated[int, SPIFreqOption] = 1_000_000,
    mode: Annotated[str, SPIModeOption] = bus_pirate_spi.SPIClockMode.MODE_0.name,
    cs_mode: Annotated[str, CSModeOption] = bus_pirate_spi.ChipSelectMode.AUTO_AFTER_TRANSFER.name,
) -> None:
    # Convert bytes_to_send into bytes
    try:
        data_to_send = binascii.a2b_hex(bytes_to_send)
    except binascii.Error:
        message = "Data must be an even number of hex digits"
        raise typer.BadParameter(message) from None

    if len(data_to_send) == 0:
        message = "At least one byte must be sent"
        raise typer.BadParameter(message)

    setup = bus_pirate_spi.SPISetup(
        frequency=freq,
        clock_mode=bus_pirate_spi.SPIClockMode[mode.upper()],
        cs_mode=bus_pirate_spi.ChipSelectMode[cs_mode.upper()],
    )

    with open_device() as device:
        spi = bus_pirate_spi.BinarySPI(device)

        status = spi.init(setup)
        if status != bus_pirate_spi.SPIStatus.OK:
            rich.print(f"[red]Failed to initialize SPI mode: {status.value}[/red]")
            sys.exit(1)

        print(f"Writing {data_to_send!r} to peripheral at {spi.get_clock_frequency()} Hz")

        # Do the transfer
        response = bytearray(len(data_to_send))
        status = spi.read_write_bytes(data_to_send, response)
        spi.deinit()

        if status != bus_pirate_spi.SPIStatus.OK:
            rich.print(f"[red]SPI transfer failed: {status.value}[/red]")
            sys.exit(1)

        # Display result as an ASCII string
        response_text = binascii.b2a_hex(response).decode("ASCII")
        print(f"Read from peripheral: {response_text}")


# serial-term command
# ---------------------------------------------------------------------------------------------


class EndOfLineType(str, enum.Enum):
    """
    Enum of line ending options supported by Miniterm
    """

    LF = "lf"
    CRLF = "crlf"
    CR = "cr"


EOLOption = typer.Option("--eol", help="End-of-line type to use", case_sensitive=False)


@app.command(help="Reset the Bus Pirate and open its interactive terminal")
def serial_term(eol: Annotated[EndOfLineType, EOLOption] = EndOfLineType.CR) -> None:
    # Get the probe out of any binary mode a previous session left it in
    device = open_device()
    open_port(device)
    try:
        device.reset()
    finally:
        device.close()

    with serial.serial_for_url(get_port_name(), baudrate=global_opt.baudrate) as serial_instance:
        # Below is based on the logic in serial.tools.miniterm.main().
        # For now I have converted most of the arguments to hardcoded values
        # but they could be re-added to the argument parsing later...
        term = miniterm.Miniterm(serial_instance, echo=False, eol=eol.value, filters=[])
        term.exit_character = chr(0x1D)  # GS/CTRL+]
        term.menu_character = chr(0x14)  # Menu: CTRL+T
        term.set_rx_encoding("ASCII")
        term.set_tx_encoding("ASCII")

        sys.stderr.write(
            "--- Miniterm on {p.name}  {p.baudrate},{p.bytesize},{p.parity},{p.stopbits} ---\n".format(p=term.serial)
        )
        sys.stderr.write(
            "--- Quit: {} | Menu: {} | Help: {} followed by {} ---\n".format(
                miniterm.key_description(term.exit_character),
                miniterm.key_description(term.menu_character),
                miniterm.key_description(term.menu_character),
                miniterm.key_description("\x08"),
            )
        )

        term.start()
        with contextlib.suppress(KeyboardInterrupt):
            term.join(True)
        sys.stderr.write("\n--- exit ---\n")
        term.join()
        term.close()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
