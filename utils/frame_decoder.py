# utils/frame_decoder.py
"""
Human-readable dump of a captured Solarman V5 frame.

Used by the ``decode`` CLI command to inspect frames copied from a packet
capture or from the session's debug log. Unlike the session codec it never
raises on a bad checksum or marker; it reports what it finds.
"""

import struct
from datetime import datetime, timezone
from enum import IntEnum
from typing import Iterable, List, Tuple, Union

from protocol import modbus_rtu
from protocol.v5_frame import FRAME_OVERHEAD, V5_START, calculate_v5_frame_checksum
from utils.helpers import parse_hex_bytes


class V5CtrlCode(IntEnum):
    """Two-byte control code as it appears on the wire (little-endian)."""
    V5Request = 0x4510
    V5Response = 0x1510
    LoggerPing = 0x4710
    LoggerResponse = 0x4210
    Unknown = -1

    @classmethod
    def _missing_(cls, value):
        return cls.Unknown


class V5FrameType(IntEnum):
    KeepAlive = 0
    Logger = 1
    Inverter = 2
    Unknown = -1

    @classmethod
    def _missing_(cls, value):
        return cls.Unknown


class V5FrameInspector:
    """Read-only accessors over the fields of a raw V5 frame."""

    def __init__(self, frame: Union[str, bytes, Iterable[str]]):
        if isinstance(frame, (bytes, bytearray)):
            self.frame = bytes(frame)
        else:
            self.frame = parse_hex_bytes(frame)
        if len(self.frame) < FRAME_OVERHEAD:
            raise ValueError(f"V5 frame too short to decode ({len(self.frame)} bytes)")

    def _le(self, start: int, end: int) -> int:
        if end > len(self.frame):
            return 0
        return int.from_bytes(self.frame[start:end], 'little')

    @property
    def frame_start(self) -> int:
        return self.frame[0]

    @property
    def frame_start_valid(self) -> bool:
        return self.frame_start == V5_START

    @property
    def v5_checksum(self) -> int:
        return calculate_v5_frame_checksum(self.frame)

    @property
    def v5_checksum_valid(self) -> bool:
        return self.frame[-2] == self.v5_checksum

    @property
    def v5_length(self) -> int:
        return self._le(1, 3)

    @property
    def control_code_value(self) -> int:
        return self._le(3, 5)

    @property
    def control_code(self) -> V5CtrlCode:
        return V5CtrlCode(self.control_code_value)

    @property
    def sequence_numbers(self) -> Tuple[int, int]:
        return self.frame[5], self.frame[6]

    @property
    def serial(self) -> int:
        return self._le(7, 11)

    @property
    def frame_type(self) -> V5FrameType:
        return V5FrameType(self.frame[11])

    @property
    def frame_status(self) -> int:
        return self.frame[12]

    # Time fields are meaningless in keep-alive frames.
    @property
    def total_work_time(self) -> int:
        return 0 if self.frame_type == V5FrameType.KeepAlive else self._le(13, 17)

    @property
    def power_on_time(self) -> int:
        return 0 if self.frame_type == V5FrameType.KeepAlive else self._le(17, 21)

    @property
    def offset_time(self) -> int:
        return 0 if self.frame_type == V5FrameType.KeepAlive else self._le(21, 25)

    @property
    def rtu_start_at(self) -> int:
        if self.control_code in (V5CtrlCode.V5Request, V5CtrlCode.LoggerResponse):
            return 26
        return 25

    @property
    def rtu(self) -> bytes:
        return self.frame[self.rtu_start_at:-2]

    @property
    def frame_crc(self) -> int:
        """CRC bytes at the end of the RTU frame, read as they appear on the wire."""
        return struct.unpack('>H', self.frame[-4:-2])[0]

    @property
    def calculated_crc(self) -> int:
        return struct.unpack('>H', modbus_rtu.get_crc(self.frame[self.rtu_start_at:-4]))[0]

    @property
    def rtu_crc_valid(self) -> bool:
        return self.frame_crc == self.calculated_crc

    @property
    def rtu_head(self) -> str:
        start = self.rtu_start_at
        return self.frame[start:start + 5].hex()

    @property
    def double_crc_frame(self) -> bool:
        rtu = self.rtu
        if len(rtu) < 4:
            return False
        return rtu[-4:-2] == modbus_rtu.get_crc(rtu[:-4])

    def payload_lines(self) -> List[str]:
        start = self.rtu_start_at
        code = self.control_code
        if code == V5CtrlCode.V5Request:
            payload_type = "Request"
        elif code == V5CtrlCode.V5Response:
            payload_type = "Response"
        else:
            payload_type = "Unknown"

        lines = [f"{'=' * 10} RTU Payload - [{payload_type}] {'=' * 10}"]
        if len(self.frame) < start + 2:
            lines.append("  (no RTU payload)")
            return lines

        lines.append(f"  Slave address: {self.frame[start]}")
        lines.append(f"  Function code: {self.frame[start + 1]}")
        lines.append(f"  CRC: {self.calculated_crc:x} (valid: {self.rtu_crc_valid})")
        if self.double_crc_frame:
            lines.append(f"  DOUBLE CRC FRAME DETECTED - REAL CRC: {self.rtu[-4:-2].hex()}")

        if code == V5CtrlCode.V5Response:
            lines.append(f"  Quantity: {self.v5_length - 14}")
            lines.append(f"  Data: {self.frame[start:-2].hex()}")
        elif code == V5CtrlCode.V5Request and len(self.frame) >= start + 6:
            addr, qty = struct.unpack('>HH', self.frame[start + 2:start + 6])
            lines.append(f"  Request Start Addr: {addr} ({addr:02x})")
            lines.append(f"  Request Quantity: {qty} ({qty:02x})")
        return lines


def decode(frame: Union[str, bytes, Iterable[str]]) -> str:
    """
    Decodes a V5 frame into a multi-line report.

    Args:
        frame: The frame as raw bytes, a hex string (whitespace allowed) or a
            list of hex byte strings such as ``["a5", "17", "00"]``.

    Returns:
        The report text.

    Raises:
        ValueError: If the input is not hex or is too short to be a V5 frame.
    """
    inspector = V5FrameInspector(frame)
    seq1, seq2 = inspector.sequence_numbers
    control_code = inspector.control_code
    frame_type = inspector.frame_type

    lines = [
        f"Frame start: {inspector.frame_start:02x} (valid: {inspector.frame_start_valid})",
        f"V5 Checksum: {inspector.v5_checksum:02x} (valid: {inspector.v5_checksum_valid})",
        f"Length: {inspector.v5_length}",
        f"Control Code: {control_code.name} (hex: {inspector.control_code_value:04x})",
        f"Sequence numbers: ({seq1}, {seq2}) (hex: {seq1:02x} {seq2:02x})",
        f"Serial Hex: {inspector.serial:x}",
        f"Serial: {inspector.serial}",
        f"Frame Type ({frame_type.name}): {int(frame_type)}",
        f"Frame Status: {inspector.frame_status}",
        f"Total Time: {inspector.total_work_time}",
        f"PowerOn Time: {inspector.power_on_time}",
        f"Offset Time: {inspector.offset_time}",
    ]

    frame_time = inspector.total_work_time + inspector.power_on_time + inspector.offset_time
    lines.append(f"Frame Time: {datetime.fromtimestamp(frame_time, tz=timezone.utc).isoformat()}")

    if frame_type != V5FrameType.KeepAlive:
        lines.append(f"Checksum: {inspector.frame_crc} hex: {inspector.frame_crc:04x} - RTU start at: {inspector.rtu_head}")
        lines.extend(inspector.payload_lines())

    return "\n".join(lines)
