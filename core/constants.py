"""
Centralized constants for the Solarman V5 client.

This module defines constants used throughout the application to avoid magic
strings and provide a single source of truth for configuration values.
"""

# Application Details
APP_NAME = "Solarman V5"
LOG_FILE_NAME = "solarman_v5.log"
CONFIG_FILE_NAME = "config.ini"

# Logger Names
LIBRARY_LOGGER_NAME = "solarman_v5"
CLI_LOGGER_NAME = "solarman_v5.cli"

# Connection Defaults
DEFAULT_PORT = 8899
DEFAULT_MB_SLAVE_ID = 1
DEFAULT_SOCKET_TIMEOUT = 60  # seconds, shared by connect and response waits
DISCONNECT_GRACE_PERIOD = 0.5  # seconds before the transport is aborted
READ_CHUNK_SIZE = 1024

# Valid ranges
MIN_SLAVE_ID = 1
MAX_SLAVE_ID = 247
MAX_LOGGER_SERIAL = 0xFFFFFFFF

# Discovery
DISCOVERY_PORT = 48899
DISCOVERY_BROADCAST_ADDRESS = "255.255.255.255"
DISCOVERY_MESSAGES = ("WIFIKIT-214028-READ", "HF-A11ASSISTHREAD")
DEFAULT_DISCOVERY_TIMEOUT = 1.0  # seconds

# Register scan (CLI)
DEFAULT_SCAN_START = 0
DEFAULT_SCAN_END = 0x0130
DEFAULT_SCAN_CHUNK = 10
DEFAULT_SCAN_DELAY = 0.5  # seconds between chunk reads
