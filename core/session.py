# core/session.py
"""
Asyncio session with a Solarman V5 data logging stick.

The session owns one TCP connection and one background reader task. Requests
are strictly serialised: at most one exchange is outstanding at a time, and a
response is matched to it by the V5 sequence number. Frames the logging stick
sends on its own (heartbeats, handshakes, data reports) are answered with a
time response and never complete an exchange.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from core.config_loader import SessionSettings
from core.constants import (
    DEFAULT_MB_SLAVE_ID,
    DEFAULT_PORT,
    DEFAULT_SOCKET_TIMEOUT,
    DISCONNECT_GRACE_PERIOD,
    LIBRARY_LOGGER_NAME,
    MAX_LOGGER_SERIAL,
    MAX_SLAVE_ID,
    MIN_SLAVE_ID,
    READ_CHUNK_SIZE,
)
from protocol import modbus_rtu
from protocol.exceptions import (
    CrcMismatchError,
    ExchangeInProgressError,
    NoSocketAvailableError,
    ResponseTimeoutError,
)
from protocol.v5_frame import V5_START, ControlCode, V5FrameCodec, split_frames
from utils.helpers import FormatOptions, format_response, to_hex

_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())


@dataclass
class PendingExchange:
    """The single request awaiting its response."""
    future: asyncio.Future
    deadline: float
    sequence: int


class SolarmanV5Session:
    """
    Reads and writes inverter registers through a Solarman V5 logging stick.

    Usage:
        async with SolarmanV5Session("192.168.1.24", 2712345678) as session:
            values = await session.read_input_registers(33022, 6)

    Args:
        address: IP address or hostname of the logging stick.
        serial: Serial number of the logging stick (printed on its label).
        port: TCP port of the logging stick.
        mb_slave_id: Modbus unit id of the inverter behind the stick.
        socket_timeout: Seconds to wait for the connection and for each response.
            An idle connection is closed (or recycled, with ``auto_reconnect``)
            after this long without traffic.
        v5_error_correction: Truncate V5 frames whose length field disagrees
            with the received length.
        auto_reconnect: Reconnect when the logging stick closes the connection,
            resending the outstanding request if there is one.
        logger: Logger to report protocol traffic to. Defaults to the library
            logger, which is silent unless the application configures logging.
    """

    def __init__(self, address: str, serial: int, port: int = DEFAULT_PORT,
                 mb_slave_id: int = DEFAULT_MB_SLAVE_ID,
                 socket_timeout: float = DEFAULT_SOCKET_TIMEOUT,
                 v5_error_correction: bool = False, auto_reconnect: bool = False,
                 logger: Optional[logging.Logger] = None):
        if not MIN_SLAVE_ID <= mb_slave_id <= MAX_SLAVE_ID:
            raise ValueError(f"Modbus slave id must be between {MIN_SLAVE_ID} and {MAX_SLAVE_ID}, got {mb_slave_id}")
        if not 0 <= serial <= MAX_LOGGER_SERIAL:
            raise ValueError(f"Logger serial must fit in 32 bits, got {serial}")

        self.address = address
        self.serial = serial
        self.port = port
        self.mb_slave_id = mb_slave_id
        self.socket_timeout = socket_timeout
        self.v5_error_correction = v5_error_correction
        self.auto_reconnect = auto_reconnect
        self.logger = logger or _library_logger
        self.log_prefix = f"SolarmanV5 [{serial}]"

        self.codec = V5FrameCodec(serial, v5_error_correction, self.logger)
        self.sequence_number: Optional[int] = None

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._last_activity = 0.0
        self._pending: Optional[PendingExchange] = None
        self._last_frame = b""

    @classmethod
    def from_settings(cls, settings: SessionSettings, logger: Optional[logging.Logger] = None) -> "SolarmanV5Session":
        """Creates a session from loaded configuration."""
        if not settings.address or settings.serial is None:
            raise ValueError("LOGGER_ADDRESS and LOGGER_SERIAL must be configured")
        return cls(
            settings.address,
            settings.serial,
            port=settings.port,
            mb_slave_id=settings.mb_slave_id,
            socket_timeout=settings.socket_timeout,
            v5_error_correction=settings.v5_error_correction,
            auto_reconnect=settings.auto_reconnect,
            logger=logger,
        )

    async def __aenter__(self) -> "SolarmanV5Session":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    # --- Connection management ---

    async def connect(self) -> None:
        """
        Opens the TCP connection and starts the reader task.

        Raises:
            NoSocketAvailableError: If the connection cannot be established
                within the socket timeout.
        """
        self.logger.debug(f"{self.log_prefix}: Connecting to {self.address}:{self.port}")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.address, self.port), timeout=self.socket_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise NoSocketAvailableError(f"Cannot open connection to {self.address}:{self.port}: {e!r}") from e

        self._reader = reader
        self._writer = writer
        self._last_activity = asyncio.get_running_loop().time()
        self._reader_task = asyncio.create_task(self._read_loop(reader, writer), name=f"SolarmanV5Reader-{self.serial}")
        self.logger.info(f"{self.log_prefix}: Connected to {self.address}:{self.port}")

    async def disconnect(self) -> None:
        """Closes the connection, failing any request still awaiting its response."""
        self._fail_pending(NoSocketAvailableError("Connection closed by client"))
        # An auto-reconnect in progress must not bring the connection back.
        task, self._reconnect_task = self._reconnect_task, None
        await self._cancel_task(task)
        await self._close_transport()
        self.logger.info(f"{self.log_prefix}: Disconnected from {self.address}:{self.port}")

    async def reconnect(self) -> None:
        """Tears down the current connection, if any, and connects again."""
        self.logger.debug(f"{self.log_prefix}: Attempting reconnect...")
        await self._close_transport()
        try:
            await self.connect()
        except NoSocketAvailableError as e:
            self.logger.debug(f"{self.log_prefix}: Reconnect failed: {e}")
            raise
        self.logger.debug(f"{self.log_prefix}: Reconnect successful")

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_transport(self) -> None:
        task, self._reader_task = self._reader_task, None
        await self._cancel_task(task)

        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=DISCONNECT_GRACE_PERIOD)
        except (asyncio.TimeoutError, OSError):
            writer.transport.abort()

    def _fail_pending(self, error: BaseException) -> bool:
        exchange = self._pending
        if exchange is None or exchange.future.done():
            return False
        exchange.future.set_exception(error)
        return True

    # --- Reader task ---

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        error: Optional[BaseException] = None
        buffer = bytearray()
        try:
            while True:
                data = await self._read_chunk(reader)
                if not data:
                    break
                buffer += data
                for frame in split_frames(buffer):
                    self._handle_frame(frame, writer)
        except OSError as e:
            error = e
        except Exception as e:
            self.logger.error(f"{self.log_prefix}: Unexpected error in reader: {e}", exc_info=True)
            error = e

        # A newer connection has replaced this one.
        if writer is not self._writer:
            return
        await self._handle_connection_lost(error)

    async def _read_chunk(self, reader: asyncio.StreamReader) -> bytes:
        """
        Returns the next chunk of received data.

        Returns ``b""`` at end of stream, or once the connection has seen no
        traffic for the socket timeout while no request is outstanding.
        """
        loop = asyncio.get_running_loop()
        while True:
            if self._pending is not None:
                timeout = self.socket_timeout
            else:
                timeout = self._last_activity + self.socket_timeout - loop.time()
                if timeout <= 0:
                    self.logger.debug(f"{self.log_prefix}: No traffic for {self.socket_timeout}s, closing idle connection")
                    return b""
            try:
                data = await asyncio.wait_for(reader.read(READ_CHUNK_SIZE), timeout=timeout)
            except asyncio.TimeoutError:
                continue
            self._last_activity = loop.time()
            return data

    def _handle_frame(self, frame: bytes, writer: asyncio.StreamWriter) -> None:
        self.logger.debug(f"{self.log_prefix}: RAW RECD: {to_hex(frame)}")

        if frame[0] != V5_START:
            self.logger.debug(f"{self.log_prefix}: V5_MISMATCH: {to_hex(frame)}")
            return
        if len(frame) < 6 or frame[5] != self.sequence_number:
            self.logger.debug(f"{self.log_prefix}: V5_SEQ_NO_MISMATCH: {to_hex(frame)}")
            return

        if self.codec.is_async_frame(frame):
            control_name = ControlCode(frame[4]).name
            response = self.codec.time_response_frame(frame)
            self.logger.debug(f"{self.log_prefix}: V5_{control_name}: {to_hex(frame)}")
            self.logger.debug(f"{self.log_prefix}: V5_{control_name} RESP: {to_hex(response)}")
            if not writer.is_closing():
                writer.write(response)
            return

        exchange = self._pending
        if exchange is not None and not exchange.future.done():
            exchange.future.set_result(bytes(frame))
        else:
            self.logger.debug(f"{self.log_prefix}: [DISCARDED] RECD: {to_hex(frame)}")

    async def _handle_connection_lost(self, error: Optional[BaseException]) -> None:
        if error is not None:
            self.logger.debug(f"{self.log_prefix}: Socket error: {error}")
            self._fail_pending(error)
        else:
            self.logger.debug(f"{self.log_prefix}: Socket closed")

        exchange = self._pending
        awaiting = exchange is not None and not exchange.future.done()

        if not self.auto_reconnect:
            if awaiting:
                self._fail_pending(NoSocketAvailableError("Connection closed on read"))
            await self._close_transport()
            return

        # disconnect() cancels this task while it reconnects.
        self._reconnect_task = asyncio.current_task()
        try:
            await self.reconnect()
        except NoSocketAvailableError as e:
            if not self._fail_pending(NoSocketAvailableError("Connection closed on read")):
                self.logger.warning(f"{self.log_prefix}: Auto-reconnect failed: {e}")
            return
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

        # The original deadline still applies to the resent request.
        if awaiting and not exchange.future.done() and self._writer is not None:
            self.logger.debug(f"{self.log_prefix}: Data expected. Retrying last request after reconnect.")
            self._writer.write(self._last_frame)
            self._last_activity = asyncio.get_running_loop().time()

    # --- Exchange ---

    def _next_sequence_number(self) -> int:
        if self.sequence_number is None:
            self.sequence_number = random.randint(1, 254)
        else:
            self.sequence_number = (self.sequence_number + 1) & 0xFF
        return self.sequence_number

    async def send_receive(self, modbus_frame: bytes) -> bytes:
        """
        Sends one Modbus RTU frame wrapped in a V5 frame and returns the
        Modbus RTU frame of the response.

        Raises:
            ExchangeInProgressError: If another request is still awaiting its response.
            NoSocketAvailableError: If not connected, or the connection is lost
                while waiting and cannot be restored.
            ResponseTimeoutError: If no response arrives within the socket timeout.
            V5FrameError: If the response envelope is invalid.
        """
        if self._pending is not None:
            raise ExchangeInProgressError("A request is already awaiting its response")
        if not self.is_connected:
            raise NoSocketAvailableError("Connection already closed.")

        loop = asyncio.get_running_loop()
        sequence = self._next_sequence_number()
        frame = self.codec.encode_request(modbus_frame, sequence)
        self._last_frame = frame

        exchange = PendingExchange(loop.create_future(), loop.time() + self.socket_timeout, sequence)
        self._pending = exchange
        try:
            self.logger.debug(f"{self.log_prefix}: SENT: {to_hex(frame)}")
            try:
                self._writer.write(frame)
                await self._writer.drain()
            except OSError as e:
                raise NoSocketAvailableError(f"Cannot write to {self.address}:{self.port}: {e}") from e

            try:
                response = await asyncio.wait_for(exchange.future, timeout=max(exchange.deadline - loop.time(), 0))
            except asyncio.TimeoutError as e:
                raise ResponseTimeoutError(f"No response from {self.address} within {self.socket_timeout}s") from e
        finally:
            self._last_activity = loop.time()
            self._pending = None

        return self.codec.decode_response(response, sequence)

    @staticmethod
    def _handle_double_crc(frame: bytes) -> Optional[bytes]:
        """
        Some logging sticks append a second, zeroed CRC to the Modbus frame.

        Returns the frame with the extra two bytes removed if that yields a
        valid frame, otherwise ``None``.
        """
        if len(frame) < 4 or frame[-2:] != b"\x00\x00":
            return None
        stripped = frame[:-2]
        if modbus_rtu.verify_crc(stripped):
            return stripped
        return None

    async def _get_modbus_response(self, mb_request_frame: bytes) -> List[int]:
        mb_response_frame = await self.send_receive(mb_request_frame)
        try:
            return modbus_rtu.parse_response(mb_response_frame, mb_request_frame)
        except CrcMismatchError:
            corrected = self._handle_double_crc(mb_response_frame)
            if corrected is None:
                raise
            self.logger.debug(f"{self.log_prefix}: Stripped double CRC from response")
            return modbus_rtu.parse_response(corrected, mb_request_frame)

    # --- Public Modbus API ---

    async def read_input_registers(self, register_addr: int, quantity: int) -> List[int]:
        """Read input registers (Modbus function code 4)."""
        frame = modbus_rtu.read_input_registers(self.mb_slave_id, register_addr, quantity)
        return await self._get_modbus_response(frame)

    async def read_holding_registers(self, register_addr: int, quantity: int) -> List[int]:
        """Read holding registers (Modbus function code 3)."""
        frame = modbus_rtu.read_holding_registers(self.mb_slave_id, register_addr, quantity)
        return await self._get_modbus_response(frame)

    async def read_input_register_formatted(self, register_addr: int, quantity: int,
                                            options: Optional[FormatOptions] = None,
                                            **kwargs) -> Union[int, float]:
        """
        Read input registers and combine them into a single value.

        Args:
            register_addr: Address of the first register.
            quantity: Number of registers forming the value, most significant first.
            options: Scale/sign/mask/shift transform. Keyword arguments
                (``scale``, ``signed``, ``bitmask``, ``bitshift``) may be given
                instead.
        """
        values = await self.read_input_registers(register_addr, quantity)
        return format_response(values, options or FormatOptions(**kwargs))

    async def read_holding_register_formatted(self, register_addr: int, quantity: int,
                                              options: Optional[FormatOptions] = None,
                                              **kwargs) -> Union[int, float]:
        """Read holding registers and combine them into a single value. See ``read_input_register_formatted``."""
        values = await self.read_holding_registers(register_addr, quantity)
        return format_response(values, options or FormatOptions(**kwargs))

    async def write_holding_register(self, register_addr: int, value: int) -> int:
        """Write a single holding register (Modbus function code 6). Returns the value written."""
        frame = modbus_rtu.write_single_register(self.mb_slave_id, register_addr, value)
        result = await self._get_modbus_response(frame)
        return result[0]

    async def write_multiple_holding_registers(self, register_addr: int, values: Sequence[int]) -> List[int]:
        """Write multiple holding registers (Modbus function code 16). Returns ``[quantity written]``."""
        frame = modbus_rtu.write_multiple_registers(self.mb_slave_id, register_addr, values)
        return await self._get_modbus_response(frame)

    async def read_coils(self, register_addr: int, quantity: int) -> List[int]:
        """Read coils (Modbus function code 1)."""
        frame = modbus_rtu.read_coils(self.mb_slave_id, register_addr, quantity)
        return await self._get_modbus_response(frame)

    async def read_discrete_inputs(self, register_addr: int, quantity: int) -> List[int]:
        """Read discrete inputs (Modbus function code 2)."""
        frame = modbus_rtu.read_discrete_inputs(self.mb_slave_id, register_addr, quantity)
        return await self._get_modbus_response(frame)

    async def write_single_coil(self, register_addr: int, value: int) -> int:
        """Write a single coil (Modbus function code 5). ``value`` is 0xFF00 (on) or 0x0000 (off)."""
        frame = modbus_rtu.write_single_coil(self.mb_slave_id, register_addr, value)
        result = await self._get_modbus_response(frame)
        return result[0]

    async def write_multiple_coils(self, register_addr: int, values: Sequence[int]) -> List[int]:
        """Write multiple coils (Modbus function code 15). Returns ``[quantity written]``."""
        frame = modbus_rtu.write_multiple_coils(self.mb_slave_id, register_addr, values)
        return await self._get_modbus_response(frame)

    async def masked_write_holding_register(self, register_addr: int, or_mask: int = 0x0000,
                                            and_mask: int = 0xFFFF) -> int:
        """
        Read-modify-write of a single holding register.

        Emulates Modbus function code 22 with a read followed by a write, so it
        is not atomic. Computes ``(current | or_mask) & and_mask``. With the
        default masks nothing is written.

        Returns:
            The value written, or the current value if nothing was written.
        """
        current_value = (await self.read_holding_registers(register_addr, 1))[0]
        if or_mask != 0x0000 or and_mask != 0xFFFF:
            masked_value = (current_value | or_mask) & and_mask
            return await self.write_holding_register(register_addr, masked_value)
        return current_value

    async def send_raw_modbus_frame(self, mb_request_frame: bytes) -> bytes:
        """Send a raw Modbus RTU frame and return the raw Modbus RTU response."""
        return await self.send_receive(mb_request_frame)

    async def send_raw_modbus_frame_parsed(self, mb_request_frame: bytes) -> List[int]:
        """Send a raw Modbus RTU frame and return the parsed response values."""
        return await self._get_modbus_response(mb_request_frame)
