# protocol/v5_frame.py
"""
Solarman V5 envelope encoding and decoding.

A V5 frame wraps a Modbus RTU frame for transport over TCP to a data logging
stick:

    [0xA5][length LE16][0x10][control][sequence LE16][serial LE32]
    [frame type][sensor type x2][delivery time x4][power on time x4][offset time x4]
    [Modbus RTU frame][checksum][0x15]

The length field counts the bytes between the header and the trailer. The
checksum is the low byte of the sum of every byte between the start marker and
the checksum itself.
"""

import logging
import struct
import time
from enum import IntEnum
from typing import List, Optional

from protocol.exceptions import V5FrameError, exception_name_for_code, MODBUS_EXCEPTION_NAMES

V5_START = 0xA5
V5_END = 0x15
V5_CONTROL_SUFFIX = 0x10
V5_FRAME_TYPE_INVERTER = 0x02

HEADER_LENGTH = 11
REQUEST_METADATA_LENGTH = 15
RESPONSE_MODBUS_OFFSET = 25
REQUEST_MODBUS_OFFSET = 26
TIME_RESPONSE_PAYLOAD_LENGTH = 10
FRAME_OVERHEAD = 13  # header + trailer, everything the length field does not count
RESPONSE_CODE_OFFSET = 0x30


class ControlCode(IntEnum):
    """Operation byte of the V5 control code (the byte following the 0x10 suffix)."""
    HANDSHAKE = 0x41
    DATA = 0x42
    INFO = 0x43
    REQUEST = 0x45
    HEARTBEAT = 0x47
    REPORT = 0x48
    UNKNOWN = -1

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


# Control codes the logging stick sends on its own; each expects a time response.
ASYNC_CONTROL_CODES = frozenset({
    ControlCode.HANDSHAKE,
    ControlCode.DATA,
    ControlCode.INFO,
    ControlCode.HEARTBEAT,
    ControlCode.REPORT,
})


def get_response_code(code: int) -> int:
    """Return the response control code for a request control code."""
    return code - RESPONSE_CODE_OFFSET


def calculate_checksum(data: bytes) -> int:
    """Sum of all bytes, truncated to 8 bits."""
    return sum(data) & 0xFF


def calculate_v5_frame_checksum(frame: bytes) -> int:
    """Checksum over a complete V5 frame, excluding start, checksum and end bytes."""
    return calculate_checksum(frame[1:-2])


class V5FrameCodec:
    """
    Encodes Modbus RTU frames into V5 frames for one logging stick and
    validates the frames it sends back.

    The codec is stateless apart from its configuration; sequence numbers are
    owned by the session and passed in explicitly.
    """

    def __init__(self, serial: int, v5_error_correction: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.serial = serial
        self.v5_error_correction = v5_error_correction
        self.logger = logger or logging.getLogger(__name__)
        self._serial_bytes = struct.pack('<I', serial)
        self._log_prefix = f"SolarmanV5 [{serial}]"

    def _header(self, length: int, control: int, sequence: bytes) -> bytearray:
        header = bytearray(struct.pack('<BHBB', V5_START, length, V5_CONTROL_SUFFIX, control))
        header += sequence[:2]
        header += self._serial_bytes
        return header

    @staticmethod
    def _trailer(frame: bytes) -> bytes:
        return bytes([calculate_checksum(frame[1:]), V5_END])

    def encode_request(self, modbus_frame: bytes, sequence: int) -> bytes:
        """
        Wrap a Modbus RTU frame in a V5 request frame.

        Args:
            modbus_frame: Complete Modbus RTU request including CRC.
            sequence: Sequence number for this request (0-255).

        Returns:
            The V5 frame ready to write to the socket.
        """
        length = REQUEST_METADATA_LENGTH + len(modbus_frame)
        frame = self._header(length, ControlCode.REQUEST, struct.pack('<H', sequence))
        frame += struct.pack('<BHIII', V5_FRAME_TYPE_INVERTER, 0, 0, 0, 0)
        frame += modbus_frame
        return bytes(frame + self._trailer(frame))

    def decode_response(self, frame: bytes, expected_sequence: Optional[int]) -> bytes:
        """
        Validate a V5 response frame and extract the Modbus RTU frame.

        Args:
            frame: The raw V5 frame as received from the logging stick.
            expected_sequence: Sequence number of the request being answered.

        Returns:
            The embedded Modbus RTU response frame.

        Raises:
            V5FrameError: If any envelope check fails or the payload cannot be
                a Modbus RTU frame.
        """
        if len(frame) < HEADER_LENGTH + 2:
            raise V5FrameError(f"V5 frame too short ({len(frame)} bytes)")

        payload_len = struct.unpack('<H', frame[1:3])[0]
        if len(frame) != FRAME_OVERHEAD + payload_len:
            self.logger.debug(f"{self._log_prefix}: frame_len {len(frame)} does not match payload_len {payload_len}")
            if self.v5_error_correction:
                frame = frame[:FRAME_OVERHEAD + payload_len]

        if frame[0] != V5_START or frame[-1] != V5_END:
            raise V5FrameError("V5 frame contains invalid start or end values")
        if frame[-2] != calculate_v5_frame_checksum(frame):
            raise V5FrameError("V5 frame contains invalid V5 checksum")
        if frame[5] != expected_sequence:
            raise V5FrameError("V5 frame contains invalid sequence number")
        if frame[7:11] != self._serial_bytes:
            raise V5FrameError("V5 frame contains incorrect data logger serial number")
        if frame[4] != get_response_code(ControlCode.REQUEST):
            raise V5FrameError("V5 frame contains incorrect control code")
        if frame[11] != V5_FRAME_TYPE_INVERTER:
            raise V5FrameError("V5 frame contains invalid frametype")

        modbus_frame = bytes(frame[RESPONSE_MODBUS_OFFSET:-2])
        if len(modbus_frame) < 5:
            if modbus_frame and modbus_frame[0] in MODBUS_EXCEPTION_NAMES:
                code = modbus_frame[0]
                raise V5FrameError(f"V5 Modbus EXCEPTION: {exception_name_for_code(code)}", exception_code=code)
            raise V5FrameError("V5 frame does not contain a valid Modbus RTU frame")
        return modbus_frame

    def time_response_frame(self, frame: bytes) -> bytes:
        """
        Build the reply to an unsolicited HANDSHAKE/DATA/INFO/HEARTBEAT/REPORT frame.

        The reply echoes the inbound sequence with its low byte incremented and
        carries the current unix time.
        """
        response = self._header(TIME_RESPONSE_PAYLOAD_LENGTH, get_response_code(frame[4]), bytes(frame[5:7]))
        response += struct.pack('<HII', 0x0100, int(time.time()), 0)
        response[5] = (response[5] + 1) & 0xFF
        return bytes(response + self._trailer(response))

    @staticmethod
    def is_async_frame(frame: bytes) -> bool:
        """True if the frame is an unsolicited logger frame that needs a time response."""
        return len(frame) > 4 and ControlCode(frame[4]) in ASYNC_CONTROL_CODES


def extract_modbus_frame(frame: bytes) -> bytes:
    """
    Return the Modbus RTU bytes embedded in a V5 request or response frame.

    Requests carry a 15-byte metadata block, responses a 14-byte one, so the
    RTU frame starts at offset 26 or 25 depending on the control code.
    """
    if len(frame) < FRAME_OVERHEAD:
        return b""
    offset = REQUEST_MODBUS_OFFSET if frame[4] == ControlCode.REQUEST else RESPONSE_MODBUS_OFFSET
    return bytes(frame[offset:-2])


def split_frames(buffer: bytearray) -> List[bytes]:
    """
    Remove the complete V5 frames at the front of a receive buffer.

    Frames are delimited by their length field, so several frames that arrive
    in one TCP segment are returned separately, and a frame split over several
    segments stays in ``buffer`` until the rest arrives.

    Data that does not begin with the start marker is returned as a single
    chunk for the caller to report and drop. When the bytes after a frame do
    not begin another frame, the length field is not trusted and the whole
    buffer is returned as one frame, leaving length mismatches to
    ``V5FrameCodec.decode_response``.
    """
    frames = []
    while buffer:
        if buffer[0] != V5_START:
            frames.append(bytes(buffer))
            buffer.clear()
            break
        if len(buffer) < 3:
            break
        frame_length = struct.unpack('<H', buffer[1:3])[0] + FRAME_OVERHEAD
        if len(buffer) < frame_length:
            break
        if len(buffer) > frame_length and buffer[frame_length] != V5_START:
            frame_length = len(buffer)
        frames.append(bytes(buffer[:frame_length]))
        del buffer[:frame_length]
    return frames
