#!/usr/bin/env python3
"""
Test suite for the command line front end.

Logging setup is patched out so the tests do not reconfigure the root logger.

Usage:
    python -m unittest tests/test_main.py
"""

import io
import os
import sys
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import patch

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import main
from core.config_loader import SessionSettings
from services.discovery_service import DiscoveredLogger

KNOWN_REQUEST_HEX = "a5170010 45bb00 b26e3c6a 020000 00000000 00000000 00000000 01030003 000575c9 3915"


def run_cli(*argv):
    stdout, stderr = io.StringIO(), io.StringIO()
    with redirect_stdout(stdout), redirect_stderr(stderr):
        exit_code = main.main(list(argv))
    return exit_code, stdout.getvalue(), stderr.getvalue()


@patch('main.setup_logging')
@patch.dict(os.environ, {}, clear=True)
class TestCli(unittest.TestCase):

    def test_decode(self, _setup_logging):
        exit_code, out, _ = run_cli("decode", *KNOWN_REQUEST_HEX.split())
        self.assertEqual(exit_code, 0)
        self.assertIn("Serial: 1782345394", out)
        self.assertIn("Request Quantity: 5", out)

    def test_decode_invalid_hex(self, _setup_logging):
        exit_code, _, err = run_cli("decode", "zz")
        self.assertEqual(exit_code, 1)
        self.assertTrue(err.startswith("Error: "))

    def test_session_command_requires_address(self, _setup_logging):
        exit_code, _, err = run_cli("read-holding", "-c", os.devnull, "-r", "0", "-q", "1")
        self.assertEqual(exit_code, 1)
        self.assertIn("LOGGER_ADDRESS", err)

    @patch('main.discover')
    def test_discover_prints_loggers(self, mock_discover, _setup_logging):
        mock_discover.return_value = [DiscoveredLogger("192.168.1.24", "98D863AABBCC", 2712345678)]
        exit_code, out, _ = run_cli("discover", "-t", "0.1")
        self.assertEqual(exit_code, 0)
        self.assertIn("IP: 192.168.1.24  MAC: 98D863AABBCC  Serial: 2712345678", out)
        mock_discover.assert_called_once_with(address="255.255.255.255", timeout=0.1)

    @patch('main.scan')
    def test_scan_without_results(self, mock_scan, _setup_logging):
        mock_scan.return_value = []
        exit_code, out, _ = run_cli("scan", "10.0.0.255")
        self.assertEqual(exit_code, 0)
        self.assertIn("No loggers found.", out)

    def test_cli_flags_override_settings(self, _setup_logging):
        args = main.build_parser().parse_args(
            ["read-input", "-a", "10.0.0.9", "-s", "0x10", "-p", "9000", "-m", "2", "-t", "5", "-r", "0", "-q", "1"]
        )
        settings = main.apply_cli_overrides(SessionSettings(address="192.168.1.24", serial=1), args)
        self.assertEqual(settings.address, "10.0.0.9")
        self.assertEqual(settings.serial, 16)
        self.assertEqual(settings.port, 9000)
        self.assertEqual(settings.mb_slave_id, 2)
        self.assertEqual(settings.socket_timeout, 5.0)

    def test_unset_flags_keep_settings(self, _setup_logging):
        args = main.build_parser().parse_args(["read-coils", "-r", "0", "-q", "8"])
        settings = main.apply_cli_overrides(SessionSettings(address="192.168.1.24", serial=1, port=8898), args)
        self.assertEqual(settings.address, "192.168.1.24")
        self.assertEqual(settings.port, 8898)


if __name__ == '__main__':
    unittest.main()
