"""
Main UHF Reader class providing the high-level interface used by the
provisioning workflows
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, List, Optional

import serial

from .config import DEFAULT_CONFIG, RfidConfig
from .exceptions import (
    ConnectionError, DeviceBusy, ReaderNotConnectedError, UHFReaderError,
)
from .reader import Reader
from .transport import SerialTransport

logger = logging.getLogger(__name__)


class UHFReader:
    """
    High-level UHF reader: owns the serial connection and the command driver,
    and hands the device to one workflow at a time.
    """

    def __init__(self, config: RfidConfig = DEFAULT_CONFIG,
                 serial_factory: Optional[Callable[..., serial.Serial]] = None):
        """
        Args:
            config: Module constants and timing
            serial_factory: Callable opening a port, ``serial.Serial`` by default
        """
        self.config = config
        self.transport = SerialTransport(config, serial_factory)
        self._reader: Optional[Reader] = None
        self._owner: Optional[str] = None
        self._owner_lock = threading.Lock()
        self.firmware_version: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._reader is not None and self.transport.is_open

    @property
    def reader(self) -> Reader:
        if not self.is_connected:
            raise ReaderNotConnectedError("Reader is not connected")
        return self._reader

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def get_available_ports(self) -> List[str]:
        return SerialTransport.list_ports()

    def open_com_port(self, port: Optional[str] = None, baud_rate: Optional[int] = None,
                      check_firmware: bool = False) -> Reader:
        """
        Open the serial connection and start the command driver

        Args:
            port: Device path, ``config.port`` when omitted
            baud_rate: Defaults to ``config.baud_rate``
            check_firmware: Ask the module for its version to confirm it answers

        Raises:
            ConnectionError: port could not be opened or the module is silent
        """
        if self.is_connected:
            raise ConnectionError(f"Already connected to {self.transport.device_name}")

        self.transport.open(port, baud_rate)
        reader = Reader(self.transport, self.config)
        reader.start()
        self._reader = reader

        if check_firmware:
            try:
                self.firmware_version = reader.get_firmware_version()
            except UHFReaderError as e:
                self.close_com_port()
                raise ConnectionError(f"Module on {self.transport.device_name} did not answer: {e}") from e

        return reader

    def close_com_port(self) -> None:
        """
        Stop the driver and release the port

        Raises:
            DeviceBusy: a workflow still holds the reader
        """
        if self._owner is not None:
            raise DeviceBusy(f"Reader is in use by {self._owner}")
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.stop()
        self.transport.close()
        self.firmware_version = None

    def apply_settings(self, rf_power: Optional[int] = None,
                       access_password: Optional[bytes] = None) -> None:
        """Push RF power and access password to the connected module"""
        reader = self.reader
        power = self.config.rf_power if rf_power is None else rf_power
        reader.set_rf_power(power)
        reader.set_access_password(access_password or self.config.access_password)

    # Exclusive use

    def acquire(self, owner: str) -> Reader:
        """
        Claim the reader for one workflow without waiting

        Raises:
            DeviceBusy: another workflow holds it
            ReaderNotConnectedError: not connected
        """
        with self._owner_lock:
            if self._owner is not None:
                raise DeviceBusy(f"Reader is in use by {self._owner}")
            reader = self.reader
            self._owner = owner
        logger.debug(f"Reader claimed by {owner}")
        return reader

    def release(self, owner: str) -> None:
        with self._owner_lock:
            if self._owner != owner:
                logger.warning(f"{owner} released a reader held by {self._owner}")
                return
            self._owner = None
        logger.debug(f"Reader released by {owner}")

    @contextmanager
    def claim(self, owner: str):
        reader = self.acquire(owner)
        try:
            yield reader
        finally:
            self.release(owner)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._owner = None
        self.close_com_port()

    open = open_com_port
    close = close_com_port
