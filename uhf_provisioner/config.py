"""
Configuration for the UHF RFID module and the provisioning workflows
"""

import dataclasses
import logging
import os
import string
from dataclasses import dataclass
from typing import Optional

from .exceptions import InvalidParameterError

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

AVAILABLE_BAUD_RATES = (9600, 19200, 38400, 57600, 115200)


@dataclass(frozen=True)
class RfidConfig:
    """Protocol constants and timing for one UHF module.

    Durations are in seconds.
    """

    # Frame format
    frame_header: int = 0xBB
    frame_header_alt: int = 0xBF
    frame_end: int = 0x7E

    # Commands
    cmd_get_firmware_version: int = 0x03
    cmd_single_poll: int = 0x22
    cmd_multiple_poll: int = 0x27
    cmd_stop_multiple_poll: int = 0x28
    cmd_read_data: int = 0x39
    cmd_write_epc: int = 0x49
    cmd_lock_tag: int = 0x82
    cmd_set_rf_power: int = 0xB6
    cmd_get_rf_power: int = 0xB7
    cmd_error: int = 0xFF

    # Memory banks
    mem_bank_reserved: int = 0x00
    mem_bank_epc: int = 0x01
    mem_bank_tid: int = 0x02
    mem_bank_user: int = 0x03
    epc_write_start_addr: int = 0x02
    epc_write_word_count: int = 0x06
    tid_word_count: int = 0x06

    # EPC identifiers
    epc_prefix: str = '5356'
    epc_length_bytes: int = 12

    # Serial port
    port: Optional[str] = None
    baud_rate: int = 115200
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = 'N'
    read_timeout: float = 0.05
    enable_line: Optional[str] = 'rts'
    module_enable_delay: float = 0.3

    # RF power (dBm)
    rf_power: int = 20
    min_rf_power: int = 0
    max_rf_power: int = 30

    # Timing
    command_timeout: float = 1.0
    write_timeout: float = 2.0
    single_poll_timeout: float = 0.5
    poll_interval: float = 0.15
    no_tag_timeout: float = 2.0
    write_verify_delay: float = 0.05
    stop_drain_time: float = 0.1

    # Write policy
    write_attempts: int = 3
    verify_attempts: int = 3
    epc_generation_attempts: int = 1000
    access_password: bytes = b'\x00\x00\x00\x00'
    lock_tags: bool = True
    lock_payload: bytes = b'\x02\x00\x80'
    capture_tid: bool = False

    def __post_init__(self):
        if not self.min_rf_power <= self.rf_power <= self.max_rf_power:
            raise InvalidParameterError(
                f"RF power must be between {self.min_rf_power} and {self.max_rf_power} dBm"
            )
        if len(self.access_password) != 4:
            raise InvalidParameterError("Access password must be 4 bytes")
        if len(self.lock_payload) != 3:
            raise InvalidParameterError("Lock payload must be 3 bytes")
        if not self.epc_prefix or any(c not in string.hexdigits for c in self.epc_prefix):
            raise InvalidParameterError(f"EPC prefix must be hex: {self.epc_prefix!r}")
        if len(self.epc_prefix) % 2 or len(self.epc_prefix) >= self.epc_length_bytes * 2:
            raise InvalidParameterError("EPC prefix must be whole bytes shorter than the EPC")
        if self.enable_line not in (None, 'rts', 'dtr'):
            raise InvalidParameterError(f"Unknown enable line: {self.enable_line}")
        if self.write_attempts < 1 or self.verify_attempts < 1:
            raise InvalidParameterError("Attempt counts must be at least 1")
        object.__setattr__(self, 'epc_prefix', self.epc_prefix.upper())

    @property
    def epc_length_hex(self) -> int:
        return self.epc_length_bytes * 2

    @property
    def epc_random_length_bytes(self) -> int:
        return self.epc_length_bytes - len(self.epc_prefix) // 2

    @property
    def frame_headers(self) -> tuple:
        return (self.frame_header, self.frame_header_alt)

    def with_overrides(self, **overrides) -> 'RfidConfig':
        """Return a copy with some fields replaced"""
        return dataclasses.replace(self, **overrides)

    @classmethod
    def from_env(cls, base: Optional['RfidConfig'] = None) -> 'RfidConfig':
        """Build a config from UHF_* environment variables on top of ``base``"""
        base = base or cls()
        overrides = {}
        env = os.environ

        if env.get('UHF_PORT'):
            overrides['port'] = env['UHF_PORT']
        if env.get('UHF_BAUD_RATE'):
            overrides['baud_rate'] = int(env['UHF_BAUD_RATE'])
        if env.get('UHF_RF_POWER'):
            overrides['rf_power'] = int(env['UHF_RF_POWER'])
        if env.get('UHF_ACCESS_PASSWORD'):
            try:
                overrides['access_password'] = bytes.fromhex(env['UHF_ACCESS_PASSWORD'])
            except ValueError:
                raise InvalidParameterError("UHF_ACCESS_PASSWORD must be 8 hex characters")
        if env.get('UHF_LOCK_TAGS'):
            overrides['lock_tags'] = env['UHF_LOCK_TAGS'].lower() in ('1', 'true', 'yes')
        if env.get('UHF_CAPTURE_TID'):
            overrides['capture_tid'] = env['UHF_CAPTURE_TID'].lower() in ('1', 'true', 'yes')
        if env.get('UHF_ENABLE_LINE'):
            line = env['UHF_ENABLE_LINE'].lower()
            overrides['enable_line'] = None if line == 'none' else line
        if env.get('UHF_COMMAND_TIMEOUT_MS'):
            overrides['command_timeout'] = int(env['UHF_COMMAND_TIMEOUT_MS']) / 1000
        if env.get('UHF_NO_TAG_TIMEOUT_MS'):
            overrides['no_tag_timeout'] = int(env['UHF_NO_TAG_TIMEOUT_MS']) / 1000
        if env.get('UHF_POLL_INTERVAL_MS'):
            overrides['poll_interval'] = int(env['UHF_POLL_INTERVAL_MS']) / 1000

        return base.with_overrides(**overrides) if overrides else base


DEFAULT_CONFIG = RfidConfig()

# Short timings for running against the simulated module
TESTING_CONFIG = RfidConfig(
    module_enable_delay=0.0,
    read_timeout=0.01,
    command_timeout=0.2,
    write_timeout=0.3,
    single_poll_timeout=0.2,
    poll_interval=0.01,
    no_tag_timeout=0.3,
    write_verify_delay=0.0,
    stop_drain_time=0.02,
)

# Configuration mapping
config = {
    'development': DEFAULT_CONFIG,
    'testing': TESTING_CONFIG,
    'default': DEFAULT_CONFIG,
}


def get_config(name: Optional[str] = None) -> RfidConfig:
    """Get the configuration for the current environment"""
    config_name = name or os.environ.get('UHF_ENV', 'default')
    return RfidConfig.from_env(config.get(config_name, config['default']))


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Set up root logging the way the tools expect"""
    logging.basicConfig(level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
                        format=fmt or LOG_FORMAT)
