# services/discovery_service.py
import logging
import socket
import time
from dataclasses import dataclass
from typing import List, Optional

from core.constants import (
    DEFAULT_DISCOVERY_TIMEOUT,
    DISCOVERY_BROADCAST_ADDRESS,
    DISCOVERY_MESSAGES,
    DISCOVERY_PORT,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveredLogger:
    ip: str
    mac: str
    serial: int


def parse_discovery_response(payload: bytes) -> Optional[DiscoveredLogger]:
    """
    Parses a discovery reply of the form ``ip,mac,serial``.

    Args:
        payload: Raw UDP datagram received on the discovery socket.

    Returns:
        The discovered logger, or None if the reply is not a valid
        discovery response (wrong field count, non-numeric or non-positive serial).
    """
    try:
        text = payload.decode('ascii').strip()
    except UnicodeDecodeError:
        return None
    parts = text.split(',')
    if len(parts) != 3:
        return None
    try:
        serial = int(parts[2].strip())
    except ValueError:
        return None
    if serial <= 0:
        return None
    return DiscoveredLogger(ip=parts[0].strip(), mac=parts[1].strip(), serial=serial)


def discover(address: str = DISCOVERY_BROADCAST_ADDRESS,
             timeout: float = DEFAULT_DISCOVERY_TIMEOUT) -> List[DiscoveredLogger]:
    """
    Broadcasts the discovery messages and collects replies until the timeout expires.

    Each logger is reported once, even if it answers both discovery messages.

    Args:
        address: Broadcast (or unicast) address to send the discovery messages to.
        timeout: Seconds to listen for replies.

    Returns:
        Discovered loggers in the order their first reply arrived.

    Raises:
        OSError: If the UDP socket cannot be opened or the broadcast cannot be sent.
    """
    results: List[DiscoveredLogger] = []
    seen_serials = set()

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind(('', 0))

        for message in DISCOVERY_MESSAGES:
            sock.sendto(message.encode('ascii'), (address, DISCOVERY_PORT))
        logger.debug(f"Discovery: Sent {len(DISCOVERY_MESSAGES)} discovery messages to {address}:{DISCOVERY_PORT}")

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                payload, sender = sock.recvfrom(1024)
            except socket.timeout:
                break

            found = parse_discovery_response(payload)
            if found is None:
                logger.debug(f"Discovery: Ignoring reply from {sender[0]}: {payload!r}")
                continue
            if found.serial in seen_serials:
                continue
            seen_serials.add(found.serial)
            results.append(found)
            logger.info(f"Discovery: Found logger {found.serial} at {found.ip} ({found.mac})")

    return results


def scan(broadcast_address: str, timeout: float = DEFAULT_DISCOVERY_TIMEOUT) -> List[DiscoveredLogger]:
    """Discovers loggers on the network served by ``broadcast_address``."""
    return discover(address=broadcast_address, timeout=timeout)
