import re
from enum import IntEnum, IntFlag

"""
Various constants used for communicating with the Bus Pirate over its serial port.
Most of these are taken from the DangerousPrototypes binary mode documentation:
http://dangerousprototypes.com/docs/Bitbang and http://dangerousprototypes.com/docs/SPI_(binary)
"""

# Serial link settings.  The Bus Pirate terminal and binary modes both run at 115200 8N1.
DEFAULT_BAUDRATE = 115200
DEFAULT_TIMEOUT = 0.5  # s

# USB IDs of the serial adapters that Bus Pirates ship with
FTDI_VID = 0x0403
FT232R_PID = 0x6001  # Bus Pirate v3.x
MICROCHIP_VID = 0x04D8
BUS_PIRATE_V4_PID = 0xFB00  # Bus Pirate v4 (native USB CDC)
DEFAULT_VIDS_PIDS = frozenset(((FTDI_VID, FT232R_PID), (MICROCHIP_VID, BUS_PIRATE_V4_PID)))

# Acknowledgment bytes returned by binary mode commands
BB_SUCCESS = 0x01
BB_FAILURE = 0x00

# Terminal mode
# ---------------------------------------------------------------------------------------------

TERMINAL_PING = "\n"
TERMINAL_RESET_CMD = "#\n"
TERMINAL_INFO_CMD = "i\n"

# Number of pings sent before a terminal reset, to force a fresh prompt
TERMINAL_PING_COUNT = 3

# Time to let the probe finish answering pings before we flush them away
TERMINAL_PING_SETTLE_TIME = 0.05  # s

# Token printed by the probe in response to the terminal reset command
TERMINAL_RESET_TOKEN = "RESET"

# Terminal responses end with a fresh prompt for the current mode, e.g. "\r\nHiZ>" or "\r\nSPI>"
TERMINAL_PROMPT_REGEX = re.compile(rb"\r\n[^\r\n>]*>")

# The probe echoes the command and then sends "\r\n" before the response text
TERMINAL_ECHO_NEWLINE_LEN = 2


# Bit-bang mode
# ---------------------------------------------------------------------------------------------


class BBIOCmd(IntEnum):
    """
    Commands understood in the bit-bang root mode (and in terminal mode, for ENTER_BBIO)
    """

    ENTER_BBIO = 0x00
    ENTER_SPI = 0x01
    ENTER_I2C = 0x02
    ENTER_UART = 0x03
    ENTER_1WIRE = 0x04
    ENTER_RAW_WIRE = 0x05
    ENTER_JTAG = 0x06
    RESET = 0x0F


# The probe needs ENTER_BBIO repeated several times before it recognizes the switch from terminal mode
BBIO_INIT_REPEAT = 20

BBIO_BANNER = b"BBIO1"
SPI_BANNER = b"SPI"

# Full length of the mode string returned on entering SPI mode ("SPI1")
SPI_MODE_STRING_LEN = 4


# Binary SPI mode
# ---------------------------------------------------------------------------------------------


class SPICmd(IntEnum):
    EXIT_TO_BBIO = 0x00
    MODE_STRING = 0x01
    CHIP_SELECT = 0x02  # | cs bit
    WRITE_THEN_READ = 0x04
    BULK_TRANSFER = 0x10  # | (length - 1)
    CFG_PERIPHERALS = 0x40  # | PeripheralCfg bits
    SET_SPEED = 0x60  # | SPISpeed code
    CFG_SPI = 0x80  # | SPICfg bits


CHIP_SELECT_MASK = 0x01
BULK_TRANSFER_LENGTH_MASK = 0x0F
CFG_PERIPHERALS_MASK = 0x0F
SET_SPEED_MASK = 0x07
CFG_SPI_MASK = 0x0F

# Longest payload that fits in the 4 bit length field of a bulk transfer command
MAX_BULK_TRANSFER_LEN = 16


class PeripheralCfg(IntFlag):
    CS_PIN = 1 << 0
    AUX_PIN = 1 << 1
    PULLUPS = 1 << 2
    POWER = 1 << 3


class SPICfg(IntFlag):
    # Cleared: sample input in the middle of the data output time
    SAMPLE_END = 1 << 0

    # Set: output changes on the active-to-idle clock transition, so data is valid on the first edge (CPHA=0).
    # Cleared: output changes on idle-to-active, data is valid on the second edge (CPHA=1)
    CLK_EDGE_ACTIVE_TO_IDLE = 1 << 1

    # Set: clock idles high (CPOL=1)
    CLK_IDLE_HIGH = 1 << 2

    # Set: pins driven to 3.3V.  Cleared: open drain (HiZ) outputs
    PIN_OUTPUT_3V3 = 1 << 3


class SPISpeed(IntEnum):
    SPEED_30KHZ = 0
    SPEED_125KHZ = 1
    SPEED_250KHZ = 2
    SPEED_1MHZ = 3
    SPEED_2MHZ = 4
    SPEED_2_6MHZ = 5
    SPEED_4MHZ = 6
    SPEED_8MHZ = 7


# Ascending table of the clock rates the probe supports, indexed by SPISpeed
SPI_SPEED_HZ: tuple[int, ...] = (
    30_000,
    125_000,
    250_000,
    1_000_000,
    2_000_000,
    2_600_000,
    4_000_000,
    8_000_000,
)
assert len(SPI_SPEED_HZ) == len(SPISpeed)


# Device identity
# ---------------------------------------------------------------------------------------------

# Versions this driver has been tested against.  Anything else makes DeviceInfo.valid False.
KNOWN_HARDWARE_VERSIONS = frozenset(("v3.5", "v3.6", "v3.b", "v4"))
KNOWN_FIRMWARE_VERSIONS = frozenset(("v5.10", "v6.1", "v6.3", "v7.0", "v7.1"))
KNOWN_BOOTLOADER_VERSIONS = frozenset(("v4.1", "v4.4", "v4.5"))

# Number of getInfo() attempts made while connecting, and the pause between them
CONNECT_INFO_ATTEMPTS = 3
CONNECT_INFO_RETRY_DELAY = 0.5  # s
