"""
Serial link to the UHF module
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

import serial
import serial.tools.list_ports

from .config import DEFAULT_CONFIG, RfidConfig
from .exceptions import ConnectionError, TransportError

logger = logging.getLogger(__name__)


class SerialTransport:
    """
    Owns one serial port: open/close, module enable line, raw writes and the
    incoming byte stream.
    """

    def __init__(self, config: RfidConfig = DEFAULT_CONFIG,
                 serial_factory: Optional[Callable[..., serial.Serial]] = None):
        self.config = config
        self._serial_factory = serial_factory or serial.Serial
        self.serial_port: Optional[serial.Serial] = None
        self.device_name = ""
        self.is_module_enabled = False
        self._write_lock = threading.Lock()
        self._closing = False

    @staticmethod
    def list_ports() -> List[str]:
        """Get list of available serial port names"""
        return [port.device for port in serial.tools.list_ports.comports()]

    @property
    def is_open(self) -> bool:
        return self.serial_port is not None and self.serial_port.is_open

    def open(self, port: Optional[str] = None, baud_rate: Optional[int] = None,
             data_bits: Optional[int] = None, stop_bits: Optional[int] = None,
             parity: Optional[str] = None) -> None:
        """
        Open the port, enable the module and wait for it to settle

        Raises:
            ConnectionError: port missing, busy or not permitted
        """
        if self.is_open:
            raise ConnectionError(f"Already connected to {self.device_name}")

        port = port or self.config.port
        if not port:
            raise ConnectionError("No serial port given")
        baud_rate = baud_rate or self.config.baud_rate

        logger.info(f"Opening {port} at {baud_rate} baud")
        try:
            self.serial_port = self._serial_factory(
                port=port,
                baudrate=baud_rate,
                bytesize=data_bits or self.config.data_bits,
                parity=parity or self.config.parity,
                stopbits=stop_bits or self.config.stop_bits,
                timeout=self.config.read_timeout,
                write_timeout=self.config.write_timeout,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            self.serial_port = None
            raise ConnectionError(f"Cannot open {port}: {e}") from e

        self.device_name = port
        try:
            self._set_module_enabled(True)
            if self.config.module_enable_delay:
                logger.debug(f"Waiting {self.config.module_enable_delay * 1000:.0f}ms for module start-up")
                time.sleep(self.config.module_enable_delay)
            self.serial_port.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            self.close()
            raise ConnectionError(f"Cannot enable module on {port}: {e}") from e

        logger.info(f"Connected to {port}")

    def _set_module_enabled(self, enabled: bool) -> None:
        line = self.config.enable_line
        if line and self.serial_port is not None:
            setattr(self.serial_port, line, enabled)
        self.is_module_enabled = enabled

    def close(self) -> None:
        """Release the port. Safe to call on every exit path."""
        port = self.serial_port
        if port is None:
            return

        self._closing = True
        try:
            try:
                if port.is_open:
                    self._set_module_enabled(False)
            except (serial.SerialException, OSError) as e:
                logger.warning(f"Could not disable module on {self.device_name}: {e}")
            try:
                port.close()
            except (serial.SerialException, OSError) as e:
                logger.warning(f"Error closing {self.device_name}: {e}")
        finally:
            self.serial_port = None
            self.is_module_enabled = False
            self._closing = False
            logger.info(f"Closed {self.device_name}")

    def write(self, data: bytes) -> None:
        port = self.serial_port
        if port is None or not port.is_open:
            raise TransportError("Serial port is not open")
        try:
            with self._write_lock:
                port.write(data)
                port.flush()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Write to {self.device_name} failed: {e}") from e

    def read_stream(self, stop: Optional[threading.Event] = None) -> Iterator[bytes]:
        """
        Yield chunks of raw bytes as they arrive

        Ends when the port is closed or ``stop`` is set.

        Raises:
            TransportError: the device went away
        """
        while stop is None or not stop.is_set():
            port = self.serial_port
            if port is None or not port.is_open:
                return
            try:
                chunk = port.read(port.in_waiting or 1)
            except (serial.SerialException, OSError, ValueError) as e:
                if self._closing or self.serial_port is not port:
                    return
                raise TransportError(f"Read from {self.device_name} failed: {e}") from e
            if chunk:
                yield chunk

    @contextmanager
    def opened(self, port: Optional[str] = None, baud_rate: Optional[int] = None):
        """Open for the duration of a ``with`` block"""
        self.open(port, baud_rate)
        try:
            yield self
        finally:
            self.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
