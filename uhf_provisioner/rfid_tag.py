"""
RFID tag data structures
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .config import DEFAULT_CONFIG

_EPC_RE = re.compile(r'^[0-9A-Fa-f]{24}$')


class TagStatus(str, Enum):
    """Lifecycle status of a provisioned tag"""
    GENERATED = 'generated'  # EPC claimed in the repository, not yet on a tag
    WRITTEN = 'written'
    LOCKED = 'locked'
    FAILED = 'failed'
    RETIRED = 'retired'

    def can_transition_to(self, new_status: 'TagStatus') -> bool:
        return new_status in _TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS = {
    TagStatus.GENERATED: frozenset({TagStatus.WRITTEN, TagStatus.FAILED}),
    TagStatus.WRITTEN: frozenset({TagStatus.LOCKED, TagStatus.FAILED, TagStatus.RETIRED}),
    TagStatus.LOCKED: frozenset({TagStatus.RETIRED}),
    TagStatus.FAILED: frozenset(),
    TagStatus.RETIRED: frozenset(),
}


def normalize_epc(epc: str) -> str:
    """Upper-case an EPC and strip separators"""
    return epc.replace('-', '').replace(' ', '').upper()


def is_valid_epc(epc: str) -> bool:
    """Check for exactly 24 hex characters"""
    return bool(_EPC_RE.match(epc))


def format_epc(epc: str) -> str:
    """Group a 96-bit EPC in dashes, e.g. 5356-A1B2-C3D4-E5F6-7890-ABCD"""
    upper = epc.upper()
    if len(upper) != 24:
        return upper
    return '-'.join(upper[i:i + 4] for i in range(0, 24, 4))


def has_vendor_prefix(epc: str, prefix: str = DEFAULT_CONFIG.epc_prefix,
                      length_hex: int = DEFAULT_CONFIG.epc_length_hex) -> bool:
    upper = epc.upper()
    return len(upper) == length_hex and upper.startswith(prefix.upper())


def epc_to_bytes(epc: str) -> bytes:
    return bytes.fromhex(normalize_epc(epc))


def bytes_to_hex(data: bytes) -> str:
    return bytes(data).hex().upper()


@dataclass
class RFIDTag:
    """
    One tag sighting reported by the module

    Attributes:
        epc: EPC as upper-case hex string
        rssi: Received Signal Strength Indicator (raw module byte)
        pc: Protocol Control word preceding the EPC
        tid: Factory TID if it was read
        device_name: Port the sighting came from
    """
    epc: str = ""
    rssi: int = 0
    pc: int = 0
    tid: Optional[str] = None
    device_name: str = ""

    @property
    def formatted_epc(self) -> str:
        return format_epc(self.epc)

    @property
    def is_vendor_tag(self) -> bool:
        return has_vendor_prefix(self.epc)

    @property
    def identity(self) -> str:
        """Key that tells physical tags apart: TID when known, else EPC"""
        return self.tid or self.epc

    def __str__(self) -> str:
        return f"RFIDTag(EPC={self.formatted_epc}, RSSI={self.rssi})"

    def __repr__(self) -> str:
        return self.__str__()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class TagRecord:
    """Persisted record of one physical tag"""
    epc_identifier: str
    status: TagStatus = TagStatus.GENERATED
    id: Optional[str] = None
    tid: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    written_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    created_by: Optional[str] = None
    # Association columns kept by the repository layer
    roll_id: Optional[str] = None
    roll_position: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def formatted_epc(self) -> str:
        return format_epc(self.epc_identifier)

    @property
    def is_vendor_tag(self) -> bool:
        return has_vendor_prefix(self.epc_identifier)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        for key in ('created_at', 'updated_at', 'written_at', 'locked_at'):
            data[key] = _format_time(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TagRecord':
        return cls(
            id=data.get('id'),
            epc_identifier=data['epc_identifier'],
            tid=data.get('tid'),
            status=TagStatus(data['status']),
            created_at=_parse_time(data.get('created_at')),
            updated_at=_parse_time(data.get('updated_at')),
            written_at=_parse_time(data.get('written_at')),
            locked_at=_parse_time(data.get('locked_at')),
            created_by=data.get('created_by'),
            roll_id=data.get('roll_id'),
            roll_position=data.get('roll_position'),
            extra=dict(data.get('extra') or {}),
        )

    def __str__(self) -> str:
        return f"TagRecord(id={self.id}, epc={self.formatted_epc}, status={self.status.value})"
