# protocol/modbus_rtu.py
"""
Modbus RTU frame construction and parsing.

Implements the subset of Modbus RTU tunnelled through a Solarman V5 logging
stick:
- CRC-16/Modbus calculation (table driven, polynomial 0xA001, seed 0xFFFF)
- Request frame builders for function codes 1-6, 15 and 16
- Response ADU parsing with exception response detection

Frame layout: [unit id][function code][payload][CRC16 little-endian].
Addresses, quantities and register values inside the payload are big-endian.
"""

import struct
from typing import List, Sequence

from protocol.exceptions import (
    CrcMismatchError,
    MalformedResponseError,
    ModbusDeviceException,
    UnsupportedFunctionError,
)

# --- Function Codes ---
READ_COILS = 0x01
READ_DISCRETE_INPUTS = 0x02
READ_HOLDING_REGISTERS = 0x03
READ_INPUT_REGISTERS = 0x04
WRITE_SINGLE_COIL = 0x05
WRITE_SINGLE_REGISTER = 0x06
WRITE_MULTIPLE_COILS = 0x0F
WRITE_MULTIPLE_REGISTERS = 0x10

EXCEPTION_OFFSET = 0x80
MIN_RESPONSE_LENGTH = 5  # unit + function + one data byte + CRC

# --- Request limits ---
MAX_UNIT_ID = 247
MAX_WORD = 0xFFFF
MAX_READ_COILS = 2000
MAX_READ_REGISTERS = 125
MAX_WRITE_COILS = 1968
MAX_WRITE_REGISTERS = 123


def _build_crc_table() -> List[int]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
        table.append(crc)
    return table


_CRC_TABLE = _build_crc_table()


def crc16(data: bytes) -> int:
    """
    Calculate the CRC-16/Modbus checksum of ``data``.

    Args:
        data: The bytes to checksum (without any trailing CRC).

    Returns:
        The 16-bit CRC value as an integer.
    """
    crc = 0xFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return crc


def get_crc(data: bytes) -> bytes:
    """Return the CRC-16 of ``data`` as 2 little-endian bytes."""
    return struct.pack('<H', crc16(data))


def add_crc(data: bytes) -> bytes:
    """Return ``data`` with its CRC-16 appended."""
    return bytes(data) + get_crc(data)


def verify_crc(frame: bytes) -> bool:
    """
    Check the trailing CRC-16 of a complete RTU frame.

    Frames shorter than 4 bytes cannot carry a unit id, a function code and a
    CRC and are never valid.
    """
    if len(frame) < 4:
        return False
    return get_crc(frame[:-2]) == bytes(frame[-2:])


# --- Request frame builders ---

def _check_range(name: str, value: int, minimum: int, maximum: int) -> None:
    if not minimum <= value <= maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}, got {value}")


def _build_request(slave_id: int, function_code: int, data: bytes) -> bytes:
    _check_range("Slave id", slave_id, 0, MAX_UNIT_ID)
    return add_crc(struct.pack('>BB', slave_id, function_code) + data)


def _pack_address_word(address: int, word_name: str, word: int, maximum: int = MAX_WORD) -> bytes:
    _check_range("Address", address, 0, MAX_WORD)
    _check_range(word_name, word, 0, maximum)
    return struct.pack('>HH', address, word)


def _pack_coils(values: Sequence[int]) -> bytes:
    """Pack coil states LSB-first, 8 coils per byte."""
    packed = bytearray((len(values) + 7) // 8)
    for i, value in enumerate(values):
        if value:
            packed[i // 8] |= 1 << (i % 8)
    return bytes(packed)


def read_coils(slave_id: int, start_addr: int, quantity: int) -> bytes:
    """FC 1 - Read Coils."""
    return _build_request(slave_id, READ_COILS, _pack_address_word(start_addr, "Quantity", quantity, MAX_READ_COILS))


def read_discrete_inputs(slave_id: int, start_addr: int, quantity: int) -> bytes:
    """FC 2 - Read Discrete Inputs."""
    return _build_request(slave_id, READ_DISCRETE_INPUTS,
                          _pack_address_word(start_addr, "Quantity", quantity, MAX_READ_COILS))


def read_holding_registers(slave_id: int, start_addr: int, quantity: int) -> bytes:
    """FC 3 - Read Holding Registers."""
    return _build_request(slave_id, READ_HOLDING_REGISTERS,
                          _pack_address_word(start_addr, "Quantity", quantity, MAX_READ_REGISTERS))


def read_input_registers(slave_id: int, start_addr: int, quantity: int) -> bytes:
    """FC 4 - Read Input Registers."""
    return _build_request(slave_id, READ_INPUT_REGISTERS,
                          _pack_address_word(start_addr, "Quantity", quantity, MAX_READ_REGISTERS))


def write_single_coil(slave_id: int, addr: int, value: int) -> bytes:
    """FC 5 - Write Single Coil. ``value`` is 0xFF00 (on) or 0x0000 (off)."""
    return _build_request(slave_id, WRITE_SINGLE_COIL, _pack_address_word(addr, "Value", value))


def write_single_register(slave_id: int, addr: int, value: int) -> bytes:
    """FC 6 - Write Single Register."""
    return _build_request(slave_id, WRITE_SINGLE_REGISTER, _pack_address_word(addr, "Value", value))


def write_multiple_coils(slave_id: int, start_addr: int, values: Sequence[int]) -> bytes:
    """
    FC 15 - Write Multiple Coils.

    Args:
        slave_id: Modbus unit id of the inverter.
        start_addr: Address of the first coil.
        values: Coil states, truthy means on.

    Returns:
        The complete RTU request frame including CRC.
    """
    payload = _pack_coils(values)
    data = _pack_address_word(start_addr, "Coil count", len(values), MAX_WRITE_COILS)
    return _build_request(slave_id, WRITE_MULTIPLE_COILS, data + bytes([len(payload)]) + payload)


def write_multiple_registers(slave_id: int, start_addr: int, values: Sequence[int]) -> bytes:
    """
    FC 16 - Write Multiple Registers.

    Args:
        slave_id: Modbus unit id of the inverter.
        start_addr: Address of the first register.
        values: 16-bit register values to write.

    Returns:
        The complete RTU request frame including CRC.
    """
    quantity = len(values)
    data = _pack_address_word(start_addr, "Register count", quantity, MAX_WRITE_REGISTERS)
    for value in values:
        _check_range("Register value", value, 0, MAX_WORD)
    data += struct.pack(f'>B{quantity}H', quantity * 2, *values)
    return _build_request(slave_id, WRITE_MULTIPLE_REGISTERS, data)


# --- Response parsing ---

def parse_response(response: bytes, request: bytes) -> List[int]:
    """
    Parse a Modbus RTU response ADU.

    Checks for an exception response first, then validates the CRC and decodes
    the payload according to the function code. Coil and discrete input
    responses do not repeat the requested quantity, so the original request is
    needed to know how many bits to unpack.

    Args:
        response: The raw RTU response frame.
        request: The RTU request frame the response answers.

    Returns:
        Register values, coil/input states (0 or 1), the echoed value of a
        single write, or the quantity written by a multiple write.

    Raises:
        MalformedResponseError: If the response is too short to decode.
        ModbusDeviceException: If the device returned an exception response.
        CrcMismatchError: If the CRC trailer does not match.
        UnsupportedFunctionError: If the function code is not supported.
    """
    if len(response) < MIN_RESPONSE_LENGTH:
        raise MalformedResponseError(f"Modbus response too short ({len(response)} bytes): {bytes(response).hex(' ')}")

    request_fc = request[1]
    response_fc = response[1]

    if response_fc == request_fc + EXCEPTION_OFFSET:
        raise ModbusDeviceException(response[2])

    if not verify_crc(response):
        raise CrcMismatchError("Modbus response CRC verification failed")

    try:
        if response_fc in (READ_COILS, READ_DISCRETE_INPUTS):
            quantity = struct.unpack('>H', request[4:6])[0]
            return [(response[3 + i // 8] >> (i % 8)) & 1 for i in range(quantity)]

        if response_fc in (READ_HOLDING_REGISTERS, READ_INPUT_REGISTERS):
            register_count = response[2] // 2
            return list(struct.unpack(f'>{register_count}H', response[3:3 + register_count * 2]))

        if response_fc in (WRITE_SINGLE_COIL, WRITE_SINGLE_REGISTER):
            return [struct.unpack('>H', response[4:6])[0]]

        if response_fc in (WRITE_MULTIPLE_COILS, WRITE_MULTIPLE_REGISTERS):
            return [struct.unpack('>H', response[4:6])[0]]
    except (struct.error, IndexError) as e:
        raise MalformedResponseError(f"Truncated Modbus response for function 0x{response_fc:02x}: {e}") from e

    raise UnsupportedFunctionError(response_fc)
