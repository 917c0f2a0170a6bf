#!/usr/bin/env python3
"""
Test suite for the Solarman V5 envelope codec.

Usage:
    python -m unittest tests/test_v5_frame.py
"""

import os
import struct
import sys
import time
import unittest

# Add the project root and the tests directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from mock_logger import MockLogger
from protocol import modbus_rtu
from protocol.exceptions import V5FrameError
from protocol.v5_frame import (
    ControlCode,
    V5FrameCodec,
    calculate_v5_frame_checksum,
    extract_modbus_frame,
    get_response_code,
    split_frames,
)

SERIAL = 1782345394
KNOWN_REQUEST = bytes.fromhex(
    "a5170010 45bb00 b26e3c6a 020000 00000000 00000000 00000000 01030003 000575c9 3915".replace(" ", "")
)


def resign(frame: bytearray) -> bytes:
    """Recomputes the V5 checksum after a test has tampered with a frame."""
    frame[-2] = calculate_v5_frame_checksum(frame)
    return bytes(frame)


class TestV5Encoding(unittest.TestCase):

    def setUp(self):
        self.codec = V5FrameCodec(SERIAL)

    def test_known_request_frame(self):
        """Matches a request frame captured from a real logging stick byte for byte."""
        modbus_frame = modbus_rtu.read_holding_registers(1, 3, 5)
        self.assertEqual(self.codec.encode_request(modbus_frame, 0xBB), KNOWN_REQUEST)

    def test_request_frame_layout(self):
        modbus_frame = modbus_rtu.read_input_registers(1, 0, 10)
        frame = self.codec.encode_request(modbus_frame, 0x00)

        self.assertEqual(frame[0], 0xA5)
        self.assertEqual(frame[-1], 0x15)
        self.assertEqual(struct.unpack('<H', frame[1:3])[0], 15 + len(modbus_frame))
        self.assertEqual(frame[3:5], b"\x10\x45")
        self.assertEqual(frame[5:7], b"\x00\x00")
        self.assertEqual(struct.unpack('<I', frame[7:11])[0], SERIAL)
        self.assertEqual(frame[11], 0x02)
        self.assertEqual(frame[12:26], bytes(14))
        self.assertEqual(frame[26:-2], modbus_frame)
        self.assertEqual(frame[-2], calculate_v5_frame_checksum(frame))


class TestV5Decoding(unittest.TestCase):

    def setUp(self):
        self.codec = V5FrameCodec(SERIAL)
        self.mock = MockLogger(SERIAL)
        self.modbus_request = modbus_rtu.read_holding_registers(1, 0, 2)
        self.request = self.codec.encode_request(self.modbus_request, 0x42)
        self.response = self.mock.build_response(self.request)

    def test_round_trip(self):
        modbus_response = self.codec.decode_response(self.response, 0x42)
        self.assertEqual(modbus_rtu.parse_response(modbus_response, self.modbus_request), [100, 101])

    def test_invalid_start(self):
        frame = bytearray(self.response)
        frame[0] = 0xA6
        with self.assertRaisesRegex(V5FrameError, "invalid start or end"):
            self.codec.decode_response(bytes(frame), 0x42)

    def test_invalid_end(self):
        frame = bytearray(self.response)
        frame[-1] = 0x16
        with self.assertRaisesRegex(V5FrameError, "invalid start or end"):
            self.codec.decode_response(bytes(frame), 0x42)

    def test_invalid_checksum(self):
        frame = bytearray(self.response)
        frame[-2] = (frame[-2] + 1) & 0xFF
        with self.assertRaisesRegex(V5FrameError, "invalid V5 checksum"):
            self.codec.decode_response(bytes(frame), 0x42)

    def test_sequence_mismatch(self):
        with self.assertRaisesRegex(V5FrameError, "invalid sequence number"):
            self.codec.decode_response(self.response, 0x43)

    def test_serial_mismatch(self):
        other = V5FrameCodec(SERIAL + 1)
        with self.assertRaisesRegex(V5FrameError, "incorrect data logger serial number"):
            other.decode_response(self.response, 0x42)

    def test_control_code_mismatch(self):
        frame = bytearray(self.response)
        frame[4] = ControlCode.HEARTBEAT - 0x30
        with self.assertRaisesRegex(V5FrameError, "incorrect control code"):
            self.codec.decode_response(resign(frame), 0x42)

    def test_frame_type_mismatch(self):
        frame = bytearray(self.response)
        frame[11] = 0x01
        with self.assertRaisesRegex(V5FrameError, "invalid frametype"):
            self.codec.decode_response(resign(frame), 0x42)

    def test_short_payload_is_reported_as_modbus_exception(self):
        frame = self.mock.build_frame(0x15, b"\x42\x00", struct.pack('<BBIII', 2, 1, 0, 0, 0) + b"\x02")
        with self.assertRaises(V5FrameError) as ctx:
            self.codec.decode_response(frame, 0x42)
        self.assertIn("IllegalDataAddress", str(ctx.exception))
        self.assertEqual(ctx.exception.exception_code, 2)

    def test_empty_payload(self):
        frame = self.mock.build_frame(0x15, b"\x42\x00", struct.pack('<BBIII', 2, 1, 0, 0, 0))
        with self.assertRaisesRegex(V5FrameError, "does not contain a valid Modbus RTU frame"):
            self.codec.decode_response(frame, 0x42)

    def test_length_mismatch_without_error_correction(self):
        with self.assertRaises(V5FrameError):
            self.codec.decode_response(self.response + b"\x00\x00", 0x42)

    def test_length_mismatch_with_error_correction(self):
        """Trailing bytes beyond the declared length are dropped when error correction is on."""
        codec = V5FrameCodec(SERIAL, v5_error_correction=True)
        modbus_response = codec.decode_response(self.response + b"\x00\x00", 0x42)
        self.assertEqual(modbus_rtu.parse_response(modbus_response, self.modbus_request), [100, 101])


class TestTimeResponse(unittest.TestCase):

    def setUp(self):
        self.codec = V5FrameCodec(SERIAL)
        self.mock = MockLogger(SERIAL)

    def test_heartbeat_reply(self):
        heartbeat = self.mock.build_frame(ControlCode.HEARTBEAT, b"\x10\x07", b"\x00")
        before = int(time.time())
        response = self.codec.time_response_frame(heartbeat)
        after = int(time.time())

        self.assertEqual(len(response), 23)
        self.assertEqual(response[0], 0xA5)
        self.assertEqual(struct.unpack('<H', response[1:3])[0], 10)
        self.assertEqual(response[3], 0x10)
        self.assertEqual(response[4], ControlCode.HEARTBEAT - 0x30)
        self.assertEqual(response[5:7], b"\x11\x07")
        self.assertEqual(struct.unpack('<I', response[7:11])[0], SERIAL)
        self.assertEqual(response[11:13], b"\x00\x01")
        timestamp = struct.unpack('<I', response[13:17])[0]
        self.assertTrue(before <= timestamp <= after)
        self.assertEqual(response[17:21], bytes(4))
        self.assertEqual(response[-2], calculate_v5_frame_checksum(response))
        self.assertEqual(response[-1], 0x15)

    def test_sequence_low_byte_wraps(self):
        handshake = self.mock.build_frame(ControlCode.HANDSHAKE, b"\xff\x00", b"\x00")
        response = self.codec.time_response_frame(handshake)
        self.assertEqual(response[4], 0x11)
        self.assertEqual(response[5], 0x00)


class TestControlCodes(unittest.TestCase):

    def test_response_code(self):
        self.assertEqual(get_response_code(ControlCode.REQUEST), 0x15)
        self.assertEqual(get_response_code(ControlCode.DATA), 0x12)

    def test_unknown_value(self):
        self.assertIs(ControlCode(0x99), ControlCode.UNKNOWN)
        self.assertIs(ControlCode(0x15), ControlCode.UNKNOWN)

    def test_async_frames(self):
        mock = MockLogger(SERIAL)
        for code in (ControlCode.HANDSHAKE, ControlCode.DATA, ControlCode.INFO,
                     ControlCode.HEARTBEAT, ControlCode.REPORT):
            with self.subTest(code=code.name):
                self.assertTrue(V5FrameCodec.is_async_frame(mock.build_frame(code, b"\x01\x00", b"\x00")))
        self.assertFalse(V5FrameCodec.is_async_frame(mock.build_frame(0x15, b"\x01\x00", b"\x00")))
        self.assertFalse(V5FrameCodec.is_async_frame(mock.build_frame(ControlCode.REQUEST, b"\x01\x00", b"\x00")))
        self.assertFalse(V5FrameCodec.is_async_frame(mock.build_frame(0x99, b"\x01\x00", b"\x00")))


class TestExtractModbusFrame(unittest.TestCase):

    def test_request_and_response_offsets(self):
        codec = V5FrameCodec(SERIAL)
        modbus_request = modbus_rtu.read_holding_registers(1, 3, 5)
        request = codec.encode_request(modbus_request, 1)
        self.assertEqual(extract_modbus_frame(request), modbus_request)

        response = MockLogger(SERIAL).build_response(request)
        self.assertEqual(extract_modbus_frame(response)[:3], b"\x01\x03\x0a")

    def test_short_frame(self):
        self.assertEqual(extract_modbus_frame(b"\xa5\x00"), b"")


class TestSplitFrames(unittest.TestCase):

    def setUp(self):
        mock = MockLogger(SERIAL)
        self.heartbeat = mock.build_frame(ControlCode.HEARTBEAT, b"\x07\x00", b"\x00")
        self.response = mock.build_response(V5FrameCodec(SERIAL).encode_request(modbus_rtu.read_holding_registers(1, 0, 2), 7))

    def test_coalesced_frames_are_separated(self):
        buffer = bytearray(self.heartbeat + self.response)
        self.assertEqual(split_frames(buffer), [self.heartbeat, self.response])
        self.assertEqual(buffer, bytearray())

    def test_partial_frame_waits_for_the_rest(self):
        buffer = bytearray(self.response[:10])
        self.assertEqual(split_frames(buffer), [])
        buffer += self.response[10:]
        self.assertEqual(split_frames(buffer), [self.response])

    def test_complete_frame_followed_by_partial_frame(self):
        buffer = bytearray(self.heartbeat + self.response[:2])
        self.assertEqual(split_frames(buffer), [self.heartbeat])
        self.assertEqual(bytes(buffer), self.response[:2])

    def test_bad_start_byte_returns_whole_buffer(self):
        garbage = b"\x00" + self.response[1:]
        buffer = bytearray(garbage + self.heartbeat)
        self.assertEqual(split_frames(buffer), [garbage + self.heartbeat])
        self.assertEqual(buffer, bytearray())

    def test_trailing_bytes_keep_frame_whole(self):
        """Extra bytes after a frame are left in it for the length check of the decoder."""
        buffer = bytearray(self.response + b"\x00\x00")
        self.assertEqual(split_frames(buffer), [self.response + b"\x00\x00"])


if __name__ == '__main__':
    unittest.main()
