#!/usr/bin/env python3
"""
Test suite for the value formatting and parsing helpers.

Usage:
    python -m unittest tests/test_helpers.py
"""

import os
import sys
import unittest

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.helpers import (
    FormatOptions,
    format_register_table,
    format_response,
    parse_hex_bytes,
    parse_int,
    to_hex,
    twos_complement,
)


class TestTwosComplement(unittest.TestCase):

    def test_boundaries(self):
        self.assertEqual(twos_complement(0xFFFF, 16), -1)
        self.assertEqual(twos_complement(0x8000, 16), -32768)
        self.assertEqual(twos_complement(0x7FFF, 16), 32767)
        self.assertEqual(twos_complement(100, 16), 100)

    def test_negative_to_unsigned(self):
        self.assertEqual(twos_complement(-1, 16), 0xFFFF)
        self.assertEqual(twos_complement(-32768, 16), 0x8000)

    def test_32_bit(self):
        self.assertEqual(twos_complement(0xFFFFFFFE, 32), -2)


class TestFormatResponse(unittest.TestCase):

    def test_registers_are_big_endian(self):
        self.assertEqual(format_response([0x0001, 0x0002]), 0x00010002)
        self.assertEqual(format_response([0x1234]), 0x1234)

    def test_signed(self):
        self.assertEqual(format_response([0xFFFF], FormatOptions(signed=True)), -1)
        self.assertEqual(format_response([0xFFFF, 0xFFFE], FormatOptions(signed=True)), -2)
        self.assertEqual(format_response([0x7FFF], FormatOptions(signed=True)), 0x7FFF)

    def test_scale(self):
        self.assertAlmostEqual(format_response([100], FormatOptions(scale=0.1)), 10.0)
        self.assertAlmostEqual(format_response([0xFFF6], FormatOptions(scale=0.1, signed=True)), -1.0)

    def test_bitmask_and_bitshift(self):
        self.assertEqual(format_response([0xABCD], FormatOptions(bitmask=0xFF00, bitshift=8)), 0xAB)
        self.assertEqual(format_response([0xABCD], FormatOptions(bitmask=0x000F)), 0xD)

    def test_bitmask_after_fractional_scale(self):
        """Bit operations apply to the integer part of a scaled value."""
        self.assertEqual(format_response([201], FormatOptions(scale=0.5, bitmask=0xFF)), 100)

    def test_default_options(self):
        self.assertEqual(format_response([5], None), 5)


class TestParsing(unittest.TestCase):

    def test_parse_hex_bytes(self):
        expected = bytes([0xA5, 0x17, 0x00])
        self.assertEqual(parse_hex_bytes("a5 17 00"), expected)
        self.assertEqual(parse_hex_bytes("a51700"), expected)
        self.assertEqual(parse_hex_bytes(["a5", "17", "00"]), expected)
        self.assertEqual(parse_hex_bytes("0xa51700"), expected)

    def test_parse_hex_bytes_invalid(self):
        with self.assertRaises(ValueError):
            parse_hex_bytes("zz")

    def test_parse_int(self):
        self.assertEqual(parse_int("42"), 42)
        self.assertEqual(parse_int("0x2A"), 42)
        self.assertEqual(parse_int(" 0130 "), 130)
        with self.assertRaises(ValueError):
            parse_int("forty")

    def test_to_hex(self):
        self.assertEqual(to_hex(b"\xa5\x15"), "a5 15")


class TestRegisterTable(unittest.TestCase):

    def test_zero_values_hidden_by_default(self):
        lines = format_register_table(0x10, [0, 5, 0])
        self.assertEqual(lines, ["0x0011       17        5  0x0005"])

    def test_show_all(self):
        self.assertEqual(len(format_register_table(0, [0, 0, 1], show_all=True)), 3)


if __name__ == '__main__':
    unittest.main()
