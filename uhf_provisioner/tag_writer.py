"""
Write state machine for a single tag

idle -> generating -> writing -> verifying -> locking -> done, with failed
reachable from every step before done. The EPC is claimed in the repository
before the module is asked to write it.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional

from .config import DEFAULT_CONFIG, RfidConfig
from .epc import EpcGenerator
from .exceptions import (
    CommandTimeout, DuplicateEpc, EpcGenerationError, IllegalStatusTransition,
    ModuleError, ReaderNotConnectedError, TagNotFound, TransportError,
    UHFReaderError, VerificationError,
)
from .reader import Reader
from .repository import TagRepository
from .rfid_tag import RFIDTag, TagRecord, TagStatus, is_valid_epc, normalize_epc

logger = logging.getLogger(__name__)


class WriteState(str, Enum):
    IDLE = 'idle'
    GENERATING = 'generating'
    WRITING = 'writing'
    VERIFYING = 'verifying'
    LOCKING = 'locking'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class WriteOutcome:
    """Result of one pass of the state machine"""
    state: WriteState = WriteState.IDLE
    record: Optional[TagRecord] = None
    attempts: int = 0
    already_written: bool = False
    locked: bool = False
    lock_error: Optional[Exception] = None
    error: Optional[Exception] = None
    # Records claimed by attempts that did not succeed
    failed_records: List[TagRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == WriteState.DONE

    @property
    def epc(self) -> Optional[str]:
        return self.record.epc_identifier if self.record else None


StateCallback = Callable[[WriteState, Optional[TagRecord]], None]


class TagWriter:
    """
    Provisions whichever tag is in the field with a fresh EPC

    One writer is meant to be reused across a session: it keeps the set of
    EPCs it knows about so consecutive draws avoid each other without another
    repository round trip.
    """

    def __init__(self, reader: Reader, repository: TagRepository,
                 config: RfidConfig = DEFAULT_CONFIG,
                 generator: Optional[EpcGenerator] = None,
                 known_epcs: Optional[Iterable[str]] = None,
                 on_state: Optional[StateCallback] = None,
                 created_by: Optional[str] = None,
                 roll_id: Optional[str] = None):
        self.reader = reader
        self.repository = repository
        self.config = config
        self.generator = generator or EpcGenerator(config)
        self.known_epcs = set(known_epcs) if known_epcs is not None else repository.list_all_epcs()
        self.on_state = on_state
        self.created_by = created_by
        self.roll_id = roll_id
        self.state = WriteState.IDLE
        self._roll_position = 0

    def _set_state(self, outcome: WriteOutcome, state: WriteState) -> None:
        outcome.state = state
        self.state = state
        logger.debug(f"Tag write state: {state.value}")
        if self.on_state:
            try:
                self.on_state(state, outcome.record)
            except Exception as e:
                logger.error(f"Error in write state callback: {e}")

    def write(self, present: Optional[RFIDTag] = None) -> WriteOutcome:
        """
        Run the state machine against the tag in the field

        Args:
            present: The sighting that triggered the write, used to spot tags
                that already carry one of our EPCs

        Returns:
            WriteOutcome; module errors end up in ``outcome.error``

        Raises:
            TransportError: the link dropped. The claimed record is marked failed first.
        """
        outcome = WriteOutcome()
        self._set_state(outcome, WriteState.IDLE)

        if present is not None and is_valid_epc(present.epc):
            existing = self.repository.find_by_epc(present.epc)
            if existing is not None:
                if existing.status in (TagStatus.WRITTEN, TagStatus.LOCKED):
                    logger.info(f"Tag {existing.formatted_epc} already {existing.status.value}")
                    outcome.record = existing
                    outcome.already_written = True
                    outcome.locked = existing.status == TagStatus.LOCKED
                    self._set_state(outcome, WriteState.DONE)
                    return outcome
                if existing.status == TagStatus.GENERATED:
                    # Claimed earlier and written, but never confirmed
                    logger.info(f"Resuming claimed tag {existing.formatted_epc}")
                    outcome.record = existing
                    outcome.attempts = 1
                    return self._confirm(outcome, existing, present.tid)

        tid = self._read_tid(present)
        attempts = self.config.write_attempts

        for attempt in range(1, attempts + 1):
            outcome.attempts = attempt
            self._set_state(outcome, WriteState.GENERATING)
            try:
                record = self._claim_epc()
            except EpcGenerationError as e:
                logger.error(str(e))
                return self._fail(outcome, e)
            outcome.record = record

            self._set_state(outcome, WriteState.WRITING)
            try:
                self.reader.write_epc(record.epc_identifier)
            except (ModuleError, CommandTimeout) as e:
                outcome.record = self._mark_failed(record)
                outcome.failed_records.append(outcome.record)
                retryable = isinstance(e, CommandTimeout) or e.retryable
                if retryable and attempt < attempts:
                    logger.warning(f"Write attempt {attempt}/{attempts} failed: {e}, retrying with a new EPC")
                    continue
                logger.error(f"Write of {record.formatted_epc} failed: {e}")
                return self._fail(outcome, e)
            except UHFReaderError:
                self._mark_failed(record)
                raise

            return self._confirm(outcome, record, tid)

        return outcome

    def _claim_epc(self) -> TagRecord:
        """Draw an EPC and persist it as generated"""
        for _ in range(self.config.epc_generation_attempts):
            epc = self.generator.generate(self.known_epcs)
            self.known_epcs.add(epc)
            try:
                record = self.repository.insert(TagRecord(
                    epc_identifier=epc,
                    status=TagStatus.GENERATED,
                    created_by=self.created_by,
                    roll_id=self.roll_id,
                    roll_position=self._roll_position + 1 if self.roll_id else None,
                ))
            except DuplicateEpc:
                logger.warning(f"EPC {epc} already recorded, drawing another")
                continue
            if self.roll_id:
                self._roll_position += 1
            return record
        raise EpcGenerationError("Every generated EPC was already recorded")

    def _read_tid(self, present: Optional[RFIDTag]) -> Optional[str]:
        if present is not None and present.tid:
            return present.tid
        if not self.config.capture_tid:
            return None
        try:
            return self.reader.read_tid()
        except (TransportError, ReaderNotConnectedError):
            raise
        except UHFReaderError as e:
            logger.warning(f"Could not read TID: {e}")
            return None

    def _verify(self, epc: str) -> None:
        seen = None
        for _ in range(self.config.verify_attempts):
            if self.config.write_verify_delay:
                time.sleep(self.config.write_verify_delay)
            try:
                tag = self.reader.single_poll()
            except (ModuleError, CommandTimeout) as e:
                logger.debug(f"Verify poll failed: {e}")
                continue
            if tag is None:
                continue
            seen = tag.epc
            if seen == epc:
                return
        raise VerificationError(epc, seen)

    def _confirm(self, outcome: WriteOutcome, record: TagRecord,
                 tid: Optional[str]) -> WriteOutcome:
        """Check the module reads back ``record``'s EPC, then finish"""
        self._set_state(outcome, WriteState.VERIFYING)
        try:
            self._verify(record.epc_identifier)
        except VerificationError as e:
            logger.error(str(e))
            outcome.record = self._mark_failed(record)
            return self._fail(outcome, e)
        except UHFReaderError:
            self._mark_failed(record)
            raise
        return self._finish(outcome, record, tid)

    def _finish(self, outcome: WriteOutcome, record: TagRecord,
                tid: Optional[str]) -> WriteOutcome:
        record = self.repository.update_status(record.id, TagStatus.WRITTEN, tid=tid)
        outcome.record = record
        logger.info(f"Tag {record.formatted_epc} written")

        if self.config.lock_tags:
            self._set_state(outcome, WriteState.LOCKING)
            try:
                self.reader.lock_tag()
            except UHFReaderError as e:
                # Still usable unlocked
                logger.warning(f"Lock of {record.formatted_epc} failed: {e}")
                outcome.lock_error = e
            else:
                outcome.record = self.repository.update_status(record.id, TagStatus.LOCKED)
                outcome.locked = True
                logger.info(f"Tag {record.formatted_epc} locked")

        self._set_state(outcome, WriteState.DONE)
        return outcome

    def _mark_failed(self, record: TagRecord) -> TagRecord:
        try:
            return self.repository.update_status(record.id, TagStatus.FAILED)
        except (IllegalStatusTransition, TagNotFound) as e:
            logger.error(f"Could not mark {record.formatted_epc} failed: {e}")
            return record

    def _fail(self, outcome: WriteOutcome, error: Exception) -> WriteOutcome:
        outcome.error = error
        self._set_state(outcome, WriteState.FAILED)
        return outcome


def retire_tag(repository: TagRepository, epc: str) -> TagRecord:
    """
    Retire the record holding ``epc``

    Raises:
        TagNotFound: no record has this EPC
        IllegalStatusTransition: the tag was never written
    """
    record = repository.find_by_epc(normalize_epc(epc))
    if record is None:
        raise TagNotFound(f"No tag record with EPC {epc}")
    retired = repository.retire(record.id)
    logger.info(f"Tag {retired.formatted_epc} retired")
    return retired
