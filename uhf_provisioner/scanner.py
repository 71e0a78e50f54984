"""
Inventory scan: classify every tag passing the reader against the repository
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import RfidConfig
from .exceptions import DeviceBusy, UHFReaderError
from .reader import Reader
from .repository import TagRepository
from .rfid_tag import RFIDTag, TagRecord, format_epc, has_vendor_prefix
from .uhf_reader import UHFReader

logger = logging.getLogger(__name__)


class Classification(str, Enum):
    KNOWN = 'known'
    UNKNOWN = 'unknown'


@dataclass
class Sighting:
    """First read of one EPC during a scan"""
    epc: str
    classification: Classification
    rssi: int = 0
    is_vendor_tag: bool = False
    record: Optional[TagRecord] = None
    count: int = 1

    @property
    def formatted_epc(self) -> str:
        return format_epc(self.epc)

    @property
    def is_known(self) -> bool:
        return self.classification == Classification.KNOWN


@dataclass
class ScanSession:
    """
    Live state of a scan

    ``foreign`` holds unknown EPCs without the vendor prefix, tags that were
    never provisioned here.
    """
    is_scanning: bool = False
    known: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)
    foreign: List[str] = field(default_factory=list)
    total_reads: int = 0
    last_error: Optional[str] = None

    @property
    def unique_count(self) -> int:
        return len(self.known) + len(self.unknown)

    def copy(self) -> 'ScanSession':
        return dataclasses.replace(
            self, known=list(self.known), unknown=list(self.unknown), foreign=list(self.foreign))


class InventoryReconciler:
    """
    Multi-poll scan that reports each EPC once, as known or unknown

    Records are only read, never changed.
    """

    OWNER = 'scan'

    def __init__(self, uhf: UHFReader, repository: TagRepository,
                 config: Optional[RfidConfig] = None,
                 on_sighting: Optional[Callable[[Sighting], None]] = None,
                 apply_power: bool = True):
        self.uhf = uhf
        self.repository = repository
        self.config = config or uhf.config
        self.on_sighting = on_sighting
        self.apply_power = apply_power
        self._session = ScanSession()
        self._sightings: Dict[str, Sighting] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def session(self) -> ScanSession:
        with self._lock:
            return self._session.copy()

    @property
    def sightings(self) -> List[Sighting]:
        with self._lock:
            return [dataclasses.replace(s) for s in self._sightings.values()]

    @property
    def is_scanning(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> ScanSession:
        """
        Claim the reader and scan in the background

        Raises:
            DeviceBusy: a scan is running or the reader is claimed elsewhere
        """
        if self.is_scanning:
            error = DeviceBusy("Scan already running")
            with self._lock:
                self._session.last_error = str(error)
            raise error
        try:
            reader = self.uhf.acquire(self.OWNER)
        except UHFReaderError as e:
            with self._lock:
                self._session.last_error = str(e)
            raise

        with self._lock:
            self._session = ScanSession(is_scanning=True)
            self._sightings = {}
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(reader,), name="inventory-scan", daemon=True)
        self._thread.start()
        logger.info("Scan started")
        return self.session

    def stop(self, timeout: Optional[float] = None) -> ScanSession:
        """Stop polling and wait until the module acknowledged it"""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return self.session

    def _run(self, reader: Reader) -> None:
        try:
            if self.apply_power:
                reader.set_rf_power(self.config.rf_power)
            for tag in reader.multi_poll(cancel_event=self._stop_event):
                self._handle(tag)
        except UHFReaderError as e:
            logger.error(f"Scan aborted: {e}")
            with self._lock:
                self._session.last_error = str(e)
        finally:
            self.uhf.release(self.OWNER)
            with self._lock:
                self._session.is_scanning = False
            logger.info("Scan stopped")

    def _handle(self, tag: RFIDTag) -> None:
        with self._lock:
            self._session.total_reads += 1
            seen = self._sightings.get(tag.epc)
            if seen is not None:
                seen.count += 1
                seen.rssi = tag.rssi
                return

        sighting = self.classify(tag)
        with self._lock:
            self._sightings[tag.epc] = sighting
            if sighting.is_known:
                self._session.known.append(tag.epc)
            else:
                self._session.unknown.append(tag.epc)
                if not sighting.is_vendor_tag:
                    self._session.foreign.append(tag.epc)

        logger.debug(f"Sighting {sighting.formatted_epc}: {sighting.classification.value}")
        if self.on_sighting:
            try:
                self.on_sighting(sighting)
            except Exception as e:
                logger.error(f"Error in sighting callback: {e}")

    def classify(self, tag: RFIDTag) -> Sighting:
        record = self.repository.find_by_epc(tag.epc)
        return Sighting(
            epc=tag.epc,
            classification=Classification.KNOWN if record else Classification.UNKNOWN,
            rssi=tag.rssi,
            is_vendor_tag=has_vendor_prefix(tag.epc, self.config.epc_prefix,
                                            self.config.epc_length_hex),
            record=record,
        )
