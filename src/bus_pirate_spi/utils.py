from __future__ import annotations

import binascii
import collections.abc
import logging
import sys
from typing import Union

"""
Module with basic definitions used by multiple bus_pirate_spi modules.
"""

# Get type annotation for "any type of byte sequence".  This changed in Python 3.12
if sys.version_info < (3, 12):
    ByteSequence = collections.abc.ByteString
else:
    ByteSequence = Union[bytes, bytearray, memoryview]

# Logger for the package
log = logging.getLogger("bus_pirate_spi")


# Base exception for the package
class BusPirateError(Exception):
    pass


class BusPirateConnectionError(BusPirateError):
    """
    The serial channel to the probe failed.  These are never retried by the transport.
    """


class SerialOpenError(BusPirateConnectionError):
    """
    This is thrown when the serial port cannot be opened.
    """


class SerialWriteError(BusPirateConnectionError):
    """
    This is thrown when the serial port rejects a write, including writes to a closed port.
    """


class SerialReadError(BusPirateConnectionError):
    """
    This is thrown when the serial port fails while a read is in progress.
    """


class ReadTimeoutError(BusPirateError):
    """
    This is thrown when a read does not complete before its deadline.
    Callers may retry at a higher level.
    """


class ProtocolMismatchError(BusPirateError):
    """
    This is thrown when the probe answers with something other than the expected banner or acknowledgment.
    """


def hexify(data: ByteSequence) -> str:
    """
    Format bytes for traffic logs, e.g. "40 0f 01"
    """
    return binascii.hexlify(bytes(data), " ").decode("ascii")
