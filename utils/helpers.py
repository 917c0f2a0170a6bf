# utils/helpers.py
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)


@dataclass
class FormatOptions:
    """
    Transform applied when several registers are read as a single value.

    Attributes:
        scale: Multiplier applied after sign conversion.
        signed: Interpret the assembled value as two's complement.
        bitmask: Mask applied to the (integer) value after scaling.
        bitshift: Right shift applied after masking.
    """
    scale: float = 1
    signed: bool = False
    bitmask: Optional[int] = None
    bitshift: Optional[int] = None


# --- Formatting Functions ---
def twos_complement(value: int, num_bits: int) -> int:
    """
    Converts between unsigned and signed two's complement representations.

    Args:
        value: The value to convert. Negative values are mapped to their
            unsigned encoding, non-negative values with the sign bit set are
            mapped to their negative counterpart.
        num_bits: Width of the value in bits.

    Returns:
        The converted value.
    """
    if value < 0:
        return (1 << num_bits) + value
    if value & (1 << (num_bits - 1)):
        return value - (1 << num_bits)
    return value


def format_response(values: Sequence[int], options: Optional[FormatOptions] = None) -> Union[int, float]:
    """
    Combines a list of register values into a single number.

    Registers are big-endian: the first register holds the most significant
    16 bits. The assembled value is then sign converted, scaled, masked and
    shifted in that order.

    Args:
        values: Register values as returned by a register read.
        options: The transform to apply; defaults to an unscaled unsigned value.

    Returns:
        An int, or a float when a non-unity scale was applied and no bit
        operation followed.
    """
    options = options or FormatOptions()
    num_registers = len(values)

    result: Union[int, float] = 0
    for i, register in enumerate(values):
        result += register << ((num_registers - 1 - i) * 16)

    if options.signed:
        result = twos_complement(result, num_registers * 16)
    if options.scale != 1:
        result *= options.scale
    if options.bitmask is not None:
        result = int(result) & options.bitmask
    if options.bitshift is not None:
        result = int(result) >> options.bitshift
    return result


def to_hex(data: Union[bytes, bytearray]) -> str:
    """Renders bytes as space separated lowercase hex pairs."""
    return bytes(data).hex(' ')


def parse_hex_bytes(tokens: Union[str, Iterable[str]]) -> bytes:
    """
    Parses hex input such as ``"a5 17 00"``, ``"a51700"`` or ``["a5", "17", "00"]``.

    Raises:
        ValueError: If the input is not valid hex.
    """
    if isinstance(tokens, str):
        tokens = [tokens]
    text = "".join(tokens).replace(" ", "").replace(":", "")
    if text.lower().startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def parse_int(value: str) -> int:
    """Parses a decimal or ``0x`` prefixed integer, as accepted on the command line."""
    value = value.strip()
    if value.lower().startswith("0x"):
        return int(value, 16)
    return int(value)


def format_register_table(start_addr: int, values: List[int], show_all: bool = False) -> List[str]:
    """
    Formats register values as the rows printed by the register scan.

    Args:
        start_addr: Address of the first value.
        values: Register values read from ``start_addr`` onwards.
        show_all: Include registers whose value is zero.

    Returns:
        One formatted line per register kept.
    """
    lines = []
    for offset, value in enumerate(values):
        if not show_all and value == 0:
            continue
        addr = start_addr + offset
        lines.append(f"0x{addr:04x}  {addr:>7}  {value:>7}  0x{value:04x}")
    return lines
