"""
UHF RFID tag provisioning core

Drives a serial UHF RFID module to provision blank tags with unique
vendor-prefixed EPCs and to reconcile scanned tags against a tag repository.

This package supports:
- The module's binary frame protocol over a serial port
- Writing, verifying and locking EPCs with a persisted tag lifecycle
- Continuous bulk writing of tags fed one after another
- Multi-poll inventory scans classified as known or unknown
"""

from .uhf_reader import UHFReader
from .rfid_tag import RFIDTag, TagRecord, TagStatus
from .reader import Reader, TagReadStream
from .config import RfidConfig, DEFAULT_CONFIG, get_config
from .epc import EpcGenerator, generate_epc
from .repository import TagRepository, InMemoryTagRepository, JsonTagRepository
from .tag_writer import TagWriter, WriteOutcome, WriteState, retire_tag
from .bulk_write import BulkWriteOrchestrator, BulkWriteSession
from .scanner import InventoryReconciler, ScanSession, Sighting, Classification
from .exceptions import (
    UHFReaderError, ConnectionError, TransportError, CommandTimeout, TimeoutError,
    ModuleError, ChecksumError, DuplicateEpc, DeviceBusy, RepositoryError,
)

__version__ = "1.0.0"

__all__ = [
    'UHFReader',
    'RFIDTag',
    'TagRecord',
    'TagStatus',
    'Reader',
    'TagReadStream',
    'RfidConfig',
    'DEFAULT_CONFIG',
    'get_config',
    'EpcGenerator',
    'generate_epc',
    'TagRepository',
    'InMemoryTagRepository',
    'JsonTagRepository',
    'TagWriter',
    'WriteOutcome',
    'WriteState',
    'retire_tag',
    'BulkWriteOrchestrator',
    'BulkWriteSession',
    'InventoryReconciler',
    'ScanSession',
    'Sighting',
    'Classification',
    'UHFReaderError',
    'ConnectionError',
    'TransportError',
    'CommandTimeout',
    'TimeoutError',
    'ModuleError',
    'ChecksumError',
    'DuplicateEpc',
    'DeviceBusy',
    'RepositoryError',
]
