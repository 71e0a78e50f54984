"""
Bulk write: provision tags one after another as the operator feeds them
"""

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set

from .config import RfidConfig
from .epc import EpcGenerator
from .exceptions import CommandTimeout, DeviceBusy, ModuleError, UHFReaderError
from .reader import Reader
from .repository import TagRepository
from .rfid_tag import RFIDTag, TagStatus, has_vendor_prefix
from .tag_writer import TagWriter, WriteOutcome, WriteState
from .uhf_reader import UHFReader

logger = logging.getLogger(__name__)

STOP_REQUESTED = 'stopped'
STOP_IDLE = 'idle'
STOP_ERROR = 'error'

PROVISIONED_STATUSES = frozenset({TagStatus.WRITTEN, TagStatus.LOCKED, TagStatus.RETIRED})


@dataclass
class BulkWriteSession:
    """Live state of a bulk write run, as shown to the operator"""
    is_running: bool = False
    tags_written: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    session_epcs: List[str] = field(default_factory=list)
    current_operation: str = ''
    last_error: Optional[str] = None
    last_tag_error: Optional[str] = None
    stop_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    def copy(self) -> 'BulkWriteSession':
        return dataclasses.replace(self, session_epcs=list(self.session_epcs))


class BulkWriteOrchestrator:
    """
    Runs the tag writer against each new tag placed on the reader

    The session polls for a tag every ``poll_interval``. A tag that differs from
    the last one processed and was not written in this session goes through
    :class:`TagWriter`; tags recorded as written, locked or retired are skipped. No
    unwritten tag for ``no_tag_timeout`` ends the session normally. Connection
    loss ends it with ``last_error`` set.
    """

    OWNER = 'bulk write'

    def __init__(self, uhf: UHFReader, repository: TagRepository,
                 config: Optional[RfidConfig] = None,
                 on_update: Optional[Callable[[BulkWriteSession], None]] = None,
                 created_by: Optional[str] = None,
                 roll_id: Optional[str] = None,
                 generator: Optional[EpcGenerator] = None):
        self.uhf = uhf
        self.repository = repository
        self.config = config or uhf.config
        self.on_update = on_update
        self.created_by = created_by
        self.roll_id = roll_id
        self.generator = generator
        self._session = BulkWriteSession()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # Lookup companion of session_epcs
        self._written_epcs: Set[str] = set()

    @property
    def session(self) -> BulkWriteSession:
        with self._lock:
            return self._session.copy()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _update(self, **changes) -> None:
        with self._lock:
            for key, value in changes.items():
                setattr(self._session, key, value)
            snapshot = self._session.copy()
        if self.on_update:
            try:
                self.on_update(snapshot)
            except Exception as e:
                logger.error(f"Error in bulk write update callback: {e}")

    def start(self) -> BulkWriteSession:
        """
        Claim the reader and start writing in the background

        Raises:
            DeviceBusy: a session is running or the reader is claimed elsewhere
            ReaderNotConnectedError: the reader is not open
        """
        if self.is_running:
            error = DeviceBusy("Bulk write already running")
            self._update(last_error=str(error))
            raise error
        try:
            reader = self.uhf.acquire(self.OWNER)
        except UHFReaderError as e:
            self._update(last_error=str(e))
            raise

        try:
            writer = TagWriter(
                reader, self.repository, self.config,
                generator=self.generator,
                known_epcs=self.repository.list_all_epcs(),
                on_state=self._on_write_state,
                created_by=self.created_by,
                roll_id=self.roll_id,
            )
        except Exception:
            self.uhf.release(self.OWNER)
            raise

        with self._lock:
            self._session = BulkWriteSession(
                is_running=True,
                current_operation='Waiting for tag',
                started_at=datetime.now(timezone.utc),
            )
            self._written_epcs = set()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(reader, writer), name="bulk-write", daemon=True)
        self._thread.start()
        logger.info("Bulk write started")
        return self.session

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> BulkWriteSession:
        """Ask the session to end after the tag in progress"""
        self._stop_event.set()
        if wait:
            self.wait(timeout)
        return self.session

    def wait(self, timeout: Optional[float] = None) -> BulkWriteSession:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return self.session

    def _on_write_state(self, state: WriteState, record) -> None:
        if state == WriteState.WRITING and record is not None:
            self._update(current_operation=f"Writing {record.formatted_epc}")
        elif state == WriteState.LOCKING:
            self._update(current_operation="Locking tag")

    def _poll(self, reader: Reader) -> Optional[RFIDTag]:
        try:
            return reader.single_poll()
        except (CommandTimeout, ModuleError) as e:
            logger.debug(f"Poll failed: {e}")
            return None

    def _is_new(self, tag: RFIDTag, last_epc: Optional[str]) -> bool:
        if tag.epc == last_epc:
            return False
        with self._lock:
            return tag.epc not in self._written_epcs

    def _is_provisioned(self, tag: RFIDTag) -> bool:
        """
        Only tags recorded as written, locked or retired are left alone. A vendor
        EPC that is unrecorded or whose record failed gets a fresh EPC, and one
        still generated is resumed by the writer.
        """
        if not has_vendor_prefix(tag.epc, self.config.epc_prefix, self.config.epc_length_hex):
            return False
        record = self.repository.find_by_epc(tag.epc)
        return record is not None and record.status in PROVISIONED_STATUSES

    def _run(self, reader: Reader, writer: TagWriter) -> None:
        stop_reason = STOP_REQUESTED
        last_epc: Optional[str] = None
        # Only unwritten tags hold off the idle timeout
        last_found = time.monotonic()
        try:
            while not self._stop_event.is_set():
                tag = self._poll(reader)

                if tag is not None and self._is_new(tag, last_epc):
                    last_epc = tag.epc
                    if self._is_provisioned(tag):
                        logger.info(f"Skipping provisioned tag {tag.formatted_epc}")
                        with self._lock:
                            skipped = self._session.skipped_count + 1
                        self._update(skipped_count=skipped,
                                     current_operation='Tag already provisioned')
                    else:
                        outcome = writer.write(tag)
                        self._record(outcome)
                        if outcome.success:
                            # The written tag now answers with its new EPC
                            last_epc = outcome.epc
                        last_found = time.monotonic()
                        continue

                if time.monotonic() - last_found >= self.config.no_tag_timeout:
                    logger.info("No unwritten tag for a while, ending bulk write")
                    stop_reason = STOP_IDLE
                    break
                self._stop_event.wait(self.config.poll_interval)
        except UHFReaderError as e:
            logger.error(f"Bulk write aborted: {e}")
            stop_reason = STOP_ERROR
            self._update(last_error=str(e))
        finally:
            self.uhf.release(self.OWNER)
            self._update(
                is_running=False,
                current_operation='Stopped',
                stop_reason=stop_reason,
                stopped_at=datetime.now(timezone.utc),
            )
            logger.info(f"Bulk write ended ({stop_reason})")

    def _record(self, outcome: WriteOutcome) -> None:
        if outcome.already_written:
            with self._lock:
                skipped = self._session.skipped_count + 1
            self._update(skipped_count=skipped, current_operation='Tag already provisioned')
        elif outcome.success:
            with self._lock:
                written = self._session.tags_written + 1
                epcs = self._session.session_epcs + [outcome.epc]
                self._written_epcs.add(outcome.epc)
            self._update(tags_written=written, session_epcs=epcs,
                         current_operation=f"Wrote {outcome.record.formatted_epc}")
        else:
            with self._lock:
                failed = self._session.failed_count + 1
            self._update(failed_count=failed, last_tag_error=str(outcome.error),
                         current_operation='Write failed')
