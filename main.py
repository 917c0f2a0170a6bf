"""
Command line entry point for the Solarman V5 client.

Each sub-command performs a single operation against a data logging stick
(or the local network, for discovery) and prints the result:
- Register and coil operations print the returned values as JSON.
- Discovery prints one line per logger found.
- `decode` prints a field-by-field dump of a captured V5 frame.

Connection parameters come from command line flags, falling back to
environment variables, then `config.ini`, then built-in defaults.
"""

import argparse
import asyncio
import json
import logging
from logging.handlers import RotatingFileHandler
import pathlib
import sys
from typing import List, Optional

from pymodbus.exceptions import ModbusException

from core.config_loader import LoggingSettings, SessionSettings, load_configuration
from core.constants import (
    APP_NAME,
    CLI_LOGGER_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_DISCOVERY_TIMEOUT,
    DEFAULT_SCAN_CHUNK,
    DEFAULT_SCAN_DELAY,
    DEFAULT_SCAN_END,
    DEFAULT_SCAN_START,
    DISCOVERY_BROADCAST_ADDRESS,
    LIBRARY_LOGGER_NAME,
    LOG_FILE_NAME,
)
from core.session import SolarmanV5Session
from services.discovery_service import DiscoveredLogger, discover, scan
from utils.frame_decoder import decode
from utils.helpers import format_register_table, parse_int

# Application version
__version__ = "1.0.0"

logger = logging.getLogger(CLI_LOGGER_NAME)


def setup_logging(logging_settings: LoggingSettings, verbose: bool = False):
    """
    Sets up logging to console and, optionally, a rotating file.

    Args:
        logging_settings: The loaded `[LOGGING]` configuration.
        verbose: Force DEBUG level regardless of the configured level.
    """
    log_level_str = "DEBUG" if verbose else logging_settings.log_level

    log_levels = {
        "DEBUG": logging.DEBUG, "INFO": logging.INFO,
        "WARNING": logging.WARNING, "ERROR": logging.ERROR, "CRITICAL": logging.CRITICAL,
    }
    effective_log_level = log_levels.get(log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(effective_log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s')

    # stdout carries command output, so log records go to stderr.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if logging_settings.log_to_file:
        log_file_path = pathlib.Path(__file__).parent / LOG_FILE_NAME

        file_handler = RotatingFileHandler(
            log_file_path, maxBytes=5*1024*1024, backupCount=3, encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logging.debug(f"Logging to file: {log_file_path}")

    logging.debug(f"Logging level set to {log_level_str}.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="solarman-v5",
        description="CLI for interacting with Solarman (IGEN-Tech) V5 based solar inverter data loggers",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", help=f"Path to the configuration file (default: {CONFIG_FILE_NAME} next to this script)")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    connection = argparse.ArgumentParser(add_help=False, parents=[common])
    connection.add_argument("-a", "--address", help="IP address of the data logging stick")
    connection.add_argument("-s", "--serial", type=parse_int, help="Serial number of the data logging stick")
    connection.add_argument("-p", "--port", type=parse_int, help="TCP port (default: 8899)")
    connection.add_argument("-m", "--mb-slave-id", type=parse_int, help="Modbus slave ID (default: 1)")
    connection.add_argument("-t", "--timeout", type=float, help="Socket timeout in seconds (default: 60)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("read-input", "Read input registers (Modbus FC 4)"),
                            ("read-holding", "Read holding registers (Modbus FC 3)"),
                            ("read-coils", "Read coils (Modbus FC 1)")):
        sub = subparsers.add_parser(name, parents=[connection], help=help_text)
        sub.add_argument("-r", "--register", type=parse_int, required=True, help="Start register address")
        sub.add_argument("-q", "--quantity", type=parse_int, required=True, help="Number of registers or coils to read")

    sub = subparsers.add_parser("write-holding", parents=[connection], help="Write a single holding register (Modbus FC 6)")
    sub.add_argument("-r", "--register", type=parse_int, required=True, help="Register address")
    sub.add_argument("-V", "--value", type=parse_int, required=True, help="Value to write")

    sub = subparsers.add_parser("write-multiple", parents=[connection], help="Write multiple holding registers (Modbus FC 16)")
    sub.add_argument("-r", "--register", type=parse_int, required=True, help="Start register address")
    sub.add_argument("--values", type=parse_int, nargs="+", required=True, help="Values to write (space separated)")

    sub = subparsers.add_parser("register-scan", parents=[connection],
                                help="Scan a range of holding registers and display all non-zero values")
    sub.add_argument("--start", type=parse_int, default=DEFAULT_SCAN_START, help="Start register address (decimal or 0x hex)")
    sub.add_argument("--end", type=parse_int, default=DEFAULT_SCAN_END, help="End register address (decimal or 0x hex)")
    sub.add_argument("--chunk", type=parse_int, default=DEFAULT_SCAN_CHUNK, help="Registers to read per request")
    sub.add_argument("--delay", type=float, default=DEFAULT_SCAN_DELAY, help="Delay between requests in seconds")
    sub.add_argument("--all", action="store_true", help="Show all registers including zeros")

    sub = subparsers.add_parser("discover", parents=[common], help="Discover Solarman data loggers on the local network")
    sub.add_argument("-a", "--address", default=DISCOVERY_BROADCAST_ADDRESS, help="Broadcast address")
    sub.add_argument("-t", "--timeout", type=float, default=DEFAULT_DISCOVERY_TIMEOUT, help="Timeout in seconds")

    sub = subparsers.add_parser("scan", parents=[common], help="Scan a broadcast address for Solarman data loggers")
    sub.add_argument("broadcast", help="Network broadcast address")
    sub.add_argument("-t", "--timeout", type=float, default=DEFAULT_DISCOVERY_TIMEOUT, help="Timeout in seconds")

    sub = subparsers.add_parser("decode", parents=[common], help="Decode a Solarman V5 frame")
    sub.add_argument("hex", nargs="+", help="Hex bytes of the frame (e.g. a5 17 00 10 45 ...)")

    return parser


def apply_cli_overrides(settings: SessionSettings, args: argparse.Namespace) -> SessionSettings:
    """Command line flags take precedence over environment and config file values."""
    if args.address is not None:
        settings.address = args.address
    if args.serial is not None:
        settings.serial = args.serial
    if args.port is not None:
        settings.port = args.port
    if args.mb_slave_id is not None:
        settings.mb_slave_id = args.mb_slave_id
    if args.timeout is not None:
        settings.socket_timeout = args.timeout
    return settings


async def run_register_scan(session: SolarmanV5Session, args: argparse.Namespace):
    print(f"Scanning registers 0x{args.start:04x} ({args.start}) to 0x{args.end:04x} ({args.end})...\n")
    print(f"{'Addr':>7}  {'Dec':>7}  {'Value':>7}  {'Hex Value':>9}")
    print("-" * 38)

    for addr in range(args.start, args.end + 1, args.chunk):
        quantity = min(args.chunk, args.end - addr + 1)
        try:
            values = await session.read_holding_registers(addr, quantity)
        except ModbusException as e:
            logger.debug(f"Register scan: Skipping 0x{addr:04x}-0x{addr + quantity - 1:04x}: {e}")
        else:
            for line in format_register_table(addr, values, show_all=args.all):
                print(line)
        if addr + args.chunk <= args.end and args.delay > 0:
            await asyncio.sleep(args.delay)

    print("\nScan complete.")


async def run_session_command(args: argparse.Namespace, settings: SessionSettings):
    """Connects, runs one register or coil operation and disconnects."""
    session = SolarmanV5Session.from_settings(settings, logger=logging.getLogger(LIBRARY_LOGGER_NAME))
    async with session:
        if args.command == "read-input":
            result = await session.read_input_registers(args.register, args.quantity)
        elif args.command == "read-holding":
            result = await session.read_holding_registers(args.register, args.quantity)
        elif args.command == "read-coils":
            result = await session.read_coils(args.register, args.quantity)
        elif args.command == "write-holding":
            result = await session.write_holding_register(args.register, args.value)
        elif args.command == "write-multiple":
            result = await session.write_multiple_holding_registers(args.register, args.values)
        else:
            await run_register_scan(session, args)
            return
    print(json.dumps(result))


def print_loggers(loggers: List[DiscoveredLogger]):
    if not loggers:
        print("No loggers found.")
        return
    for found in loggers:
        print(f"IP: {found.ip}  MAC: {found.mac}  Serial: {found.serial}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config_path = args.config or str(pathlib.Path(__file__).parent.resolve() / CONFIG_FILE_NAME)
    session_settings, logging_settings = load_configuration(config_path)
    setup_logging(logging_settings, verbose=args.verbose)
    logger.debug(f"--- {APP_NAME} v{__version__}: {args.command} ---")

    try:
        if args.command == "decode":
            print(decode(args.hex))
        elif args.command == "discover":
            print_loggers(discover(address=args.address, timeout=args.timeout))
        elif args.command == "scan":
            print_loggers(scan(args.broadcast, timeout=args.timeout))
        else:
            apply_cli_overrides(session_settings, args)
            asyncio.run(run_session_command(args, session_settings))
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
