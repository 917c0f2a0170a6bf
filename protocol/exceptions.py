# protocol/exceptions.py
"""
Exception hierarchy for the Solarman V5 client.

Every error raised by the codecs and the session derives from the pymodbus
exception classes, so code that already guards Modbus calls with
``except ModbusException`` keeps working when it talks to a V5 logging stick.
"""

from typing import Optional

from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

# Modbus exception codes as reported by the device (function code + 0x80).
MODBUS_EXCEPTION_NAMES = {
    1: "IllegalFunction",
    2: "IllegalDataAddress",
    3: "IllegalDataValue",
    4: "ServerDeviceFailure",
    5: "Acknowledge",
    6: "ServerDeviceBusy",
}


def exception_name_for_code(exception_code: int) -> str:
    """Return the symbolic name of a Modbus exception code, or ``UnknownException(N)``."""
    return MODBUS_EXCEPTION_NAMES.get(exception_code, f"UnknownException({exception_code})")


class V5FrameError(ModbusException):
    """
    The V5 envelope failed validation.

    Raised for a bad start/end marker, checksum, sequence number, logger serial,
    control code or frame type, and for envelopes that do not carry a usable
    Modbus RTU frame. ``exception_code`` is set when the undersized payload
    could be read as a Modbus exception code.
    """

    def __init__(self, message: str, exception_code: Optional[int] = None):
        self.exception_code = exception_code
        super().__init__(message)


class ModbusDeviceException(ModbusException):
    """The inverter answered with a Modbus exception response."""

    def __init__(self, exception_code: int):
        self.exception_code = exception_code
        self.exception_name = exception_name_for_code(exception_code)
        if exception_code in MODBUS_EXCEPTION_NAMES:
            message = f"Modbus exception: {self.exception_name}"
        else:
            message = f"Modbus exception: unknown exception {exception_code}"
        super().__init__(message)


class CrcMismatchError(ModbusIOException):
    """The CRC-16 trailer of a Modbus RTU response does not match its content."""


class MalformedResponseError(ModbusIOException):
    """The Modbus RTU response is too short to be decoded."""


class UnsupportedFunctionError(ModbusException):
    """The response carries a function code this client cannot decode."""

    def __init__(self, function_code: int):
        self.function_code = function_code
        super().__init__(f"Unsupported Modbus function code: 0x{function_code:02x}")


class NoSocketAvailableError(ConnectionException):
    """No usable TCP connection to the data logging stick."""


class ResponseTimeoutError(ModbusIOException):
    """No valid response arrived before the request deadline."""


class ExchangeInProgressError(ModbusException):
    """A request was issued while another one is still awaiting its response."""
