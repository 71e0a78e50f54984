"""
Tag record persistence
"""

import copy
import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from .exceptions import DuplicateEpc, IllegalStatusTransition, RepositoryError, TagNotFound
from .rfid_tag import TagRecord, TagStatus, normalize_epc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TagRepository(ABC):
    """Storage for tag records, implemented by the host application"""

    @abstractmethod
    def insert(self, record: TagRecord) -> TagRecord:
        """Store a new record and assign its id

        Raises:
            DuplicateEpc: the EPC is already recorded
        """

    @abstractmethod
    def update_status(self, record_id: str, status: TagStatus,
                      timestamps: Optional[Dict[str, datetime]] = None,
                      tid: Optional[str] = None) -> TagRecord:
        """Move a record to ``status``

        Raises:
            TagNotFound: unknown id
            IllegalStatusTransition: the move is not allowed from the current status
        """

    @abstractmethod
    def find_by_epc(self, epc: str) -> Optional[TagRecord]:
        pass

    @abstractmethod
    def find_by_id(self, record_id: str) -> Optional[TagRecord]:
        pass

    @abstractmethod
    def list_all_epcs(self) -> Set[str]:
        """Every EPC ever recorded, whatever its status"""

    def retire(self, record_id: str) -> TagRecord:
        """Retire a written or locked tag"""
        return self.update_status(record_id, TagStatus.RETIRED)

    def find_by_epcs(self, epcs: Iterable[str]) -> Dict[str, TagRecord]:
        found = {}
        for epc in epcs:
            record = self.find_by_epc(epc)
            if record is not None:
                found[record.epc_identifier] = record
        return found

    @abstractmethod
    def count(self, status: Optional[TagStatus] = None) -> int:
        pass


class InMemoryTagRepository(TagRepository):
    """
    Thread-safe repository kept in a dict. Callers always get copies, so a
    record only changes through :meth:`update_status`.
    """

    def __init__(self, records: Iterable[TagRecord] = (),
                 clock: Callable[[], datetime] = _utcnow):
        self._lock = threading.RLock()
        self._clock = clock
        self._by_id: Dict[str, TagRecord] = {}
        self._by_epc: Dict[str, str] = {}
        for record in records:
            record.id = record.id or str(uuid.uuid4())
            self._store(record)

    def _store(self, record: TagRecord) -> None:
        self._by_id[record.id] = record
        self._by_epc[record.epc_identifier] = record.id

    def _changed(self) -> None:
        """Hook run after every mutation"""

    def insert(self, record: TagRecord) -> TagRecord:
        epc = normalize_epc(record.epc_identifier)
        with self._lock:
            if epc in self._by_epc:
                raise DuplicateEpc(epc)
            now = self._clock()
            stored = copy.deepcopy(record)
            stored.epc_identifier = epc
            stored.id = stored.id or str(uuid.uuid4())
            stored.created_at = stored.created_at or now
            stored.updated_at = now
            self._store(stored)
            self._changed()
            logger.debug(f"Inserted {stored}")
            return copy.deepcopy(stored)

    def update_status(self, record_id: str, status: TagStatus,
                      timestamps: Optional[Dict[str, datetime]] = None,
                      tid: Optional[str] = None) -> TagRecord:
        status = TagStatus(status)
        with self._lock:
            record = self._by_id.get(record_id)
            if record is None:
                raise TagNotFound(f"No tag record with id {record_id}")
            if not record.status.can_transition_to(status):
                raise IllegalStatusTransition(record.status, status)

            now = self._clock()
            stamps = dict(timestamps or {})
            if status == TagStatus.WRITTEN:
                stamps.setdefault('written_at', now)
            elif status == TagStatus.LOCKED:
                stamps.setdefault('locked_at', now)
                if record.written_at is None:
                    stamps.setdefault('written_at', now)

            unknown = set(stamps) - {'written_at', 'locked_at'}
            if unknown:
                raise ValueError(f"Unknown timestamp fields: {sorted(unknown)}")
            # written_at only once written, locked_at only once locked
            allowed = set()
            if status in (TagStatus.WRITTEN, TagStatus.LOCKED):
                allowed.add('written_at')
            if status == TagStatus.LOCKED:
                allowed.add('locked_at')
            refused = set(stamps) - allowed
            if refused:
                raise ValueError(
                    f"Timestamp fields {sorted(refused)} do not apply to status {status.value}")
            for key, value in stamps.items():
                setattr(record, key, value)
            if tid:
                record.tid = tid
            record.status = status
            record.updated_at = now
            self._changed()
            logger.debug(f"Updated {record}")
            return copy.deepcopy(record)

    def find_by_epc(self, epc: str) -> Optional[TagRecord]:
        with self._lock:
            record_id = self._by_epc.get(normalize_epc(epc))
            return copy.deepcopy(self._by_id[record_id]) if record_id else None

    def find_by_id(self, record_id: str) -> Optional[TagRecord]:
        with self._lock:
            record = self._by_id.get(record_id)
            return copy.deepcopy(record) if record else None

    def list_all_epcs(self) -> Set[str]:
        with self._lock:
            return set(self._by_epc)

    def count(self, status: Optional[TagStatus] = None) -> int:
        with self._lock:
            if status is None:
                return len(self._by_id)
            return sum(1 for r in self._by_id.values() if r.status == status)

    def all(self) -> List[TagRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._by_id.values()]


class JsonTagRepository(InMemoryTagRepository):
    """
    In-memory repository mirrored to a JSON file after every change

    A missing file starts an empty repository. A file that exists but cannot
    be read in full raises :class:`RepositoryError` and is left untouched, since
    saving over it would free every EPC it holds for reuse.
    """

    def __init__(self, path: Union[str, Path], clock: Callable[[], datetime] = _utcnow):
        self.path = Path(path)
        super().__init__(self._load(), clock)

    def _load(self) -> List[TagRecord]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.error(f"Could not read {self.path}: {e}")
            raise RepositoryError(f"Tag records in {self.path} are unreadable: {e}") from e

        items = data.get("records") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise RepositoryError(f"Tag records in {self.path} have no 'records' list")

        records = []
        for item in items:
            try:
                records.append(TagRecord.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.error(f"Malformed tag record in {self.path}: {item!r}")
                raise RepositoryError(f"Malformed tag record in {self.path}: {item!r}") from e
        return records

    def _changed(self) -> None:
        data = {"records": [r.to_dict() for r in self._by_id.values()]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self.path)
