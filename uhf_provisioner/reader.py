"""
Command driver for the UHF module: request/response correlation and
per-command payload handling
"""

import logging
import queue
import threading
import time
from typing import Iterator, Optional, Union

from .config import DEFAULT_CONFIG, RfidConfig
from .exceptions import (
    CommandTimeout, DeviceBusy, ERROR_CODES, InvalidParameterError, ModuleError,
    ReaderNotConnectedError, RESP_SUCCESS, RESP_TAG_NOT_FOUND, TransportError,
    UHFReaderError,
)
from .frame_codec import (
    Frame, FrameDecoder, build_get_firmware_version, build_lock_tag,
    build_multiple_poll, build_read_data, build_set_rf_power, build_write_epc,
    command_name, encode, hex_dump, parse_tag_read,
)
from .rfid_tag import RFIDTag, bytes_to_hex, epc_to_bytes
from .transport import SerialTransport

logger = logging.getLogger(__name__)

# How long a notice wait blocks before re-checking for cancellation
_NOTICE_WAIT = 0.05


class TagReadStream:
    """
    Tag reads from multi-poll mode

    Iterating starts polling. Closing the stream (or leaving its ``with``
    block) stops polling and drains late notices; :meth:`cancel` does the same
    from another thread. A closed stream that was not cancelled can be
    iterated again to start a new round.
    """

    def __init__(self, reader: 'Reader', count: int = 0,
                 cancel_event: Optional[threading.Event] = None):
        self._reader = reader
        self._count = count
        self._cancel = cancel_event or threading.Event()
        self._iterator: Optional[Iterator[RFIDTag]] = None

    def __iter__(self) -> Iterator[RFIDTag]:
        self.close()
        self._iterator = self._run()
        return self._iterator

    def _run(self) -> Iterator[RFIDTag]:
        self._reader._start_polling(self._count)
        try:
            while not self._cancel.is_set():
                try:
                    item = self._reader._notices.get(timeout=_NOTICE_WAIT)
                except queue.Empty:
                    continue
                if isinstance(item, Exception):
                    raise item
                tag = parse_tag_read(item.payload, self._reader.transport.device_name)
                if tag is not None:
                    yield tag
        finally:
            self._reader._stop_polling()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def close(self) -> None:
        if self._iterator is not None:
            self._iterator.close()
            self._iterator = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class Reader:
    """
    Low-level command driver. One command is outstanding at a time; multi-poll
    notices are queued separately so commands such as Stop Multiple Poll can be
    exchanged while notices keep arriving.
    """

    def __init__(self, transport: SerialTransport, config: RfidConfig = DEFAULT_CONFIG):
        self.transport = transport
        self.config = config
        self._decoder = FrameDecoder(config)
        self._responses: queue.Queue = queue.Queue()
        self._notices: queue.Queue = queue.Queue()
        self._command_lock = threading.RLock()
        self._pending_lock = threading.Lock()
        self._pending_command: Optional[int] = None
        self._stop_event = threading.Event()
        self._dispatch_thread: Optional[threading.Thread] = None
        self._transport_error: Optional[TransportError] = None
        self._access_password = bytes(config.access_password)
        self.is_polling = False

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._dispatch_thread is not None and self._dispatch_thread.is_alive()

    @property
    def checksum_errors(self) -> int:
        return self._decoder.errors

    def start(self) -> None:
        """Start consuming the transport's byte stream"""
        if self.is_running:
            return
        self._stop_event.clear()
        self._transport_error = None
        self._decoder.reset()
        self._drain(self._responses)
        self._drain(self._notices)
        self._dispatch_thread = threading.Thread(
            target=self._dispatch_loop, name="uhf-dispatch", daemon=True)
        self._dispatch_thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._dispatch_thread is not None:
            self._dispatch_thread.join(timeout=2.0)
            self._dispatch_thread = None
        self.is_polling = False

    def _dispatch_loop(self) -> None:
        try:
            for chunk in self.transport.read_stream(self._stop_event):
                logger.debug(f"RX {hex_dump(chunk)}")
                for frame in self._decoder.feed(chunk):
                    self._route(frame)
        except TransportError as e:
            logger.error(f"Serial link lost: {e}")
            self._transport_error = e
            self.is_polling = False
            self._responses.put(e)
            self._notices.put(e)

    def _route(self, frame: Frame) -> None:
        with self._pending_lock:
            pending = self._pending_command

        if frame.is_notice and frame.command == self.config.cmd_multiple_poll:
            if self.is_polling:
                self._notices.put(frame)
            else:
                logger.debug(f"Dropping late poll notice: {frame}")
            return

        if frame.is_command:
            logger.debug(f"Ignoring command echo: {frame}")
            return

        if pending is not None and frame.command in (pending, self.config.cmd_error):
            self._responses.put(frame)
            return

        logger.debug(f"Unsolicited frame: {frame}")

    @staticmethod
    def _drain(q: queue.Queue) -> int:
        drained = 0
        while True:
            try:
                q.get_nowait()
            except queue.Empty:
                return drained
            drained += 1

    # Request / response

    def _ensure_ready(self) -> None:
        if self._transport_error is not None:
            raise TransportError(str(self._transport_error))
        if not self.is_running or not self.transport.is_open:
            raise ReaderNotConnectedError("Reader is not connected")

    def _exchange(self, command: int, payload: bytes = b'',
                  timeout: Optional[float] = None) -> Frame:
        """
        Send one command and wait for the frame answering it

        Raises:
            CommandTimeout: nothing matched within ``timeout``
            ModuleError: the module reported an error status
            TransportError: the link dropped
        """
        self._ensure_ready()
        timeout = timeout or self.config.command_timeout

        with self._command_lock:
            self._drain(self._responses)
            with self._pending_lock:
                self._pending_command = command
            try:
                data = encode(command, payload, config=self.config)
                logger.debug(f"TX {command_name(command, self.config)}: {hex_dump(data)}")
                self.transport.write(data)
                try:
                    item = self._responses.get(timeout=timeout)
                except queue.Empty:
                    logger.warning(f"{command_name(command, self.config)} timed out")
                    raise CommandTimeout(command, timeout) from None
            finally:
                with self._pending_lock:
                    self._pending_command = None

        if isinstance(item, Exception):
            raise item
        self._check_status(item, command)
        return item

    def _check_status(self, frame: Frame, command: int) -> None:
        if frame.command == self.config.cmd_error:
            code = frame.payload[0] if frame.payload else 0xFF
            raise ModuleError(code, command)
        # Tag memory commands answer with tag data, not a status byte
        if command in (self.config.cmd_write_epc, self.config.cmd_lock_tag,
                       self.config.cmd_read_data):
            return
        if frame.is_response and frame.payload and frame.payload[0] in ERROR_CODES:
            raise ModuleError(frame.payload[0], command)

    @staticmethod
    def _strip_status(payload: bytes) -> bytes:
        if payload and payload[0] == RESP_SUCCESS:
            return payload[1:]
        return payload

    # Configuration

    def set_access_password(self, password: Union[bytes, str]) -> None:
        """Set the 4-byte access password used for write and lock"""
        if isinstance(password, str):
            password = bytes.fromhex(password)
        if len(password) != 4:
            raise InvalidParameterError("Access password must be 4 bytes")
        self._access_password = bytes(password)

    @property
    def access_password(self) -> bytes:
        return self._access_password

    def get_firmware_version(self) -> str:
        frame = self._exchange(self.config.cmd_get_firmware_version,
                               build_get_firmware_version(),
                               timeout=self.config.write_timeout)
        payload = frame.payload
        # First byte echoes the info type requested
        if payload and payload[0] in (0x00, RESP_SUCCESS):
            payload = payload[1:]
        version = ''.join(chr(b) for b in payload if 0x20 <= b <= 0x7E)
        logger.info(f"Firmware version: {version}")
        return version

    def set_rf_power(self, power_dbm: int) -> None:
        payload = build_set_rf_power(power_dbm, self.config)
        self._exchange(self.config.cmd_set_rf_power, payload)
        logger.info(f"RF power set to {power_dbm} dBm")

    def get_rf_power(self) -> int:
        frame = self._exchange(self.config.cmd_get_rf_power)
        payload = frame.payload
        if len(payload) >= 2 and payload[0] == RESP_SUCCESS:
            return payload[1]
        if payload:
            return payload[0]
        raise UHFReaderError("Empty RF power response")

    # Inventory

    def single_poll(self) -> Optional[RFIDTag]:
        """Return the tag in the field, or None when there is none"""
        try:
            frame = self._exchange(self.config.cmd_single_poll,
                                   timeout=self.config.single_poll_timeout)
        except ModuleError as e:
            if e.code == RESP_TAG_NOT_FOUND:
                return None
            raise

        payload = self._strip_status(frame.payload) if frame.is_response else frame.payload
        if not payload:
            return None
        return parse_tag_read(payload, self.transport.device_name)

    def multi_poll(self, count: int = 0,
                   cancel_event: Optional[threading.Event] = None) -> TagReadStream:
        """Continuous inventory as a cancellable stream of tag reads"""
        return TagReadStream(self, count, cancel_event)

    def _start_polling(self, count: int) -> None:
        self._ensure_ready()
        with self._command_lock:
            if self.is_polling:
                raise DeviceBusy("Multi-poll already running")
            self._drain(self._notices)
            self.is_polling = True
            data = encode(self.config.cmd_multiple_poll, build_multiple_poll(count),
                          config=self.config)
            logger.debug(f"TX MultiplePoll: {hex_dump(data)}")
            try:
                self.transport.write(data)
            except TransportError:
                self.is_polling = False
                raise
        logger.info("Polling started")

    def _stop_polling(self) -> None:
        if not self.is_polling:
            return
        try:
            self._exchange(self.config.cmd_stop_multiple_poll)
            logger.info("Polling stopped")
        except (CommandTimeout, ModuleError) as e:
            logger.warning(f"Stop polling not acknowledged ({e}), assuming stopped")
        except (TransportError, ReaderNotConnectedError) as e:
            logger.warning(f"Could not send stop polling: {e}")
        finally:
            if self.config.stop_drain_time:
                time.sleep(self.config.stop_drain_time)
            self.is_polling = False
            drained = self._drain(self._notices)
            if drained:
                logger.debug(f"Drained {drained} in-flight notices")

    # Tag memory

    def read_data(self, bank: int, address: int, word_count: int,
                  password: Optional[bytes] = None) -> bytes:
        """Read ``word_count`` words; the data sits at the end of the reply"""
        payload = build_read_data(password or self._access_password, bank, address, word_count)
        frame = self._exchange(self.config.cmd_read_data, payload,
                               timeout=self.config.write_timeout)
        size = word_count * 2
        if len(frame.payload) < size:
            raise UHFReaderError(f"Short read: wanted {size} bytes, got {len(frame.payload)}")
        return frame.payload[-size:]

    def read_tid(self) -> str:
        data = self.read_data(self.config.mem_bank_tid, 0, self.config.tid_word_count)
        return bytes_to_hex(data)

    def write_epc(self, epc: Union[str, bytes]) -> None:
        """Write a 96-bit EPC into the EPC bank of the tag in the field"""
        epc_bytes = epc_to_bytes(epc) if isinstance(epc, str) else bytes(epc)
        payload = build_write_epc(self._access_password, epc_bytes, self.config)
        logger.info(f"Writing EPC {bytes_to_hex(epc_bytes)}")
        self._exchange(self.config.cmd_write_epc, payload, timeout=self.config.write_timeout)

    def lock_tag(self, password: Optional[bytes] = None,
                 lock_payload: Optional[bytes] = None) -> None:
        payload = build_lock_tag(password or self._access_password,
                                 lock_payload or self.config.lock_payload)
        logger.info("Locking tag")
        self._exchange(self.config.cmd_lock_tag, payload, timeout=self.config.write_timeout)
