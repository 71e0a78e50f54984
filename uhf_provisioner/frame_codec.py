"""
Codec for the UHF module's binary frames

Frame format::

    [Header 0xBB] [Type] [Command] [PL MSB] [PL LSB] [Payload...] [Checksum] [End 0x7E]

The checksum is the low byte of the sum of Type through the last payload byte.
Responses may start with the alternate header 0xBF.
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

from .config import DEFAULT_CONFIG, RfidConfig
from .exceptions import ChecksumError, FrameError, InvalidParameterError
from .rfid_tag import RFIDTag, bytes_to_hex

logger = logging.getLogger(__name__)

# Header(1) + Type(1) + Command(1) + PL(2) + Checksum(1) + End(1)
MIN_FRAME_SIZE = 7
MAX_PAYLOAD = 0xFFFF


class FrameType(IntEnum):
    COMMAND = 0x00
    RESPONSE = 0x01
    NOTICE = 0x02


@dataclass(frozen=True)
class Frame:
    """One decoded frame"""
    header: int
    frame_type: FrameType
    command: int
    payload: bytes
    checksum: int

    @property
    def is_response(self) -> bool:
        return self.frame_type == FrameType.RESPONSE

    @property
    def is_notice(self) -> bool:
        return self.frame_type == FrameType.NOTICE

    @property
    def is_command(self) -> bool:
        return self.frame_type == FrameType.COMMAND

    @property
    def is_error_frame(self) -> bool:
        return self.is_response and self.command == DEFAULT_CONFIG.cmd_error

    def to_bytes(self) -> bytes:
        return encode(self.command, self.payload, self.frame_type, self.header)

    def __str__(self) -> str:
        return (f"Frame(type={self.frame_type.name}, cmd={command_name(self.command)}, "
                f"payload={hex_dump(self.payload)})")


def hex_dump(data: bytes) -> str:
    """Spaced upper-case hex for logging"""
    return ' '.join(f'{b:02X}' for b in data)


def checksum(body: bytes) -> int:
    return sum(body) & 0xFF


def command_name(command: int, config: RfidConfig = DEFAULT_CONFIG) -> str:
    names = {
        config.cmd_get_firmware_version: 'GetFirmwareVersion',
        config.cmd_single_poll: 'SinglePoll',
        config.cmd_multiple_poll: 'MultiplePoll',
        config.cmd_stop_multiple_poll: 'StopMultiplePoll',
        config.cmd_read_data: 'ReadData',
        config.cmd_write_epc: 'WriteEpc',
        config.cmd_lock_tag: 'LockTag',
        config.cmd_set_rf_power: 'SetRfPower',
        config.cmd_get_rf_power: 'GetRfPower',
        config.cmd_error: 'Error',
    }
    return names.get(command, f'0x{command:02X}')


def encode(command: int, payload: bytes = b'', frame_type: int = FrameType.COMMAND,
           header: Optional[int] = None, config: RfidConfig = DEFAULT_CONFIG) -> bytes:
    """Build a complete frame ready to write to the port"""
    payload = bytes(payload)
    if len(payload) > MAX_PAYLOAD:
        raise InvalidParameterError(f"Payload too long: {len(payload)} bytes")
    if not 0 <= command <= 0xFF:
        raise InvalidParameterError(f"Command out of range: {command}")

    body = struct.pack('>BBH', int(frame_type), command, len(payload)) + payload
    start = config.frame_header if header is None else header
    return bytes([start]) + body + bytes([checksum(body), config.frame_end])


def _find_header(data: bytes, start: int, config: RfidConfig) -> int:
    for i in range(start, len(data)):
        if data[i] in config.frame_headers:
            return i
    return -1


def _frame_status(data: bytes, start: int, config: RfidConfig) -> Optional[bool]:
    """True for a complete valid frame at ``start``, False for a broken one, None while incomplete"""
    if len(data) - start < MIN_FRAME_SIZE:
        return None
    if data[start + 1] not in FrameType._value2member_map_:
        return False
    length = (data[start + 3] << 8) | data[start + 4]
    end = start + MIN_FRAME_SIZE + length
    if len(data) < end:
        return None
    return data[end - 2] == checksum(data[start + 1:end - 2]) and data[end - 1] == config.frame_end


def _next_complete(data: bytes, start: int, config: RfidConfig) -> int:
    index = _find_header(data, start, config)
    while index != -1:
        if _frame_status(data, index, config):
            return index
        index = _find_header(data, index + 1, config)
    return -1


def _resync(data: bytes, start: int, config: RfidConfig) -> bytes:
    """
    Leftover beginning at the next frame

    A header byte among stray bytes is passed over when a complete frame
    follows it; otherwise the first header that may still start a frame wins.
    """
    index = _find_header(data, start, config)
    first_partial = -1
    while index != -1:
        status = _frame_status(data, index, config)
        if status:
            return data[index:]
        if status is None and first_partial == -1:
            first_partial = index
        index = _find_header(data, index + 1, config)
    return data[first_partial:] if first_partial != -1 else b''


def decode(data: bytes, config: RfidConfig = DEFAULT_CONFIG) -> Tuple[Optional[Frame], bytes]:
    """
    Decode at most one frame from the front of a byte buffer

    Returns:
        (frame, remaining). ``frame`` is None when the buffer does not yet hold a
        complete frame; ``remaining`` then starts at the partial frame's header so
        more bytes can be appended. After a frame, ``remaining`` starts at the next
        frame, skipping stray bytes even when they contain a header value.

    Raises:
        ChecksumError: checksum mismatch; ``remaining`` resumes past the bad header
        FrameError: wrong trailer byte; same recovery as above
    """
    data = bytes(data)
    start = _find_header(data, 0, config)

    while start != -1:
        if len(data) - start < MIN_FRAME_SIZE:
            return None, data[start:]

        frame_type = data[start + 1]
        if frame_type not in FrameType._value2member_map_:
            start = _find_header(data, start + 1, config)
            continue

        length = (data[start + 3] << 8) | data[start + 4]
        end = start + MIN_FRAME_SIZE + length
        if len(data) < end:
            # A stray header byte must not hold back a complete frame behind it
            later = _next_complete(data, start + 1, config)
            if later != -1:
                start = later
                continue
            return None, data[start:]

        raw = data[start:end]
        expected = checksum(raw[1:5 + length])
        if raw[-2] != expected:
            raise ChecksumError(
                f"Checksum mismatch: got 0x{raw[-2]:02X}, expected 0x{expected:02X}",
                raw=raw, remaining=_resync(data, start + 1, config))
        if raw[-1] != config.frame_end:
            raise FrameError(
                f"Bad frame end 0x{raw[-1]:02X}",
                raw=raw, remaining=_resync(data, start + 1, config))

        frame = Frame(
            header=raw[0],
            frame_type=FrameType(frame_type),
            command=raw[2],
            payload=raw[5:5 + length],
            checksum=raw[-2],
        )
        return frame, _resync(data, end, config)

    return None, b''


class FrameDecoder:
    """Accumulates serial chunks and yields complete frames"""

    def __init__(self, config: RfidConfig = DEFAULT_CONFIG, max_buffer: int = 4096):
        self.config = config
        self.max_buffer = max_buffer
        self.errors = 0
        self._buffer = b''

    @property
    def pending(self) -> bytes:
        return self._buffer

    def reset(self) -> None:
        self._buffer = b''

    def feed(self, chunk: bytes) -> List[Frame]:
        self._buffer += bytes(chunk)
        frames = []
        while self._buffer:
            try:
                frame, self._buffer = decode(self._buffer, self.config)
            except FrameError as e:
                self.errors += 1
                logger.warning(f"Discarding frame: {e} [{hex_dump(e.raw)}]")
                self._buffer = e.remaining
                continue

            if frame is None:
                if len(self._buffer) > self.max_buffer:
                    logger.warning(f"Frame buffer over {self.max_buffer} bytes, dropping garbage")
                    self._buffer = _resync(self._buffer, 1, self.config)
                    continue
                break

            frames.append(frame)
        return frames


# Payload builders

def build_multiple_poll(count: int = 0) -> bytes:
    """``count`` of 0 polls until stopped"""
    return struct.pack('>H', count)


def build_get_firmware_version() -> bytes:
    # 0x00 selects hardware version info
    return b'\x00'


def build_set_rf_power(power_dbm: int, config: RfidConfig = DEFAULT_CONFIG) -> bytes:
    if not config.min_rf_power <= power_dbm <= config.max_rf_power:
        raise InvalidParameterError(
            f"Power must be between {config.min_rf_power} and {config.max_rf_power} dBm")
    return bytes([power_dbm])


def _check_password(password: bytes) -> bytes:
    password = bytes(password)
    if len(password) != 4:
        raise InvalidParameterError("Access password must be 4 bytes")
    return password


def build_read_data(password: bytes, bank: int, address: int, word_count: int) -> bytes:
    return _check_password(password) + struct.pack('>BHH', bank, address, word_count)


def build_write_epc(password: bytes, epc: bytes, config: RfidConfig = DEFAULT_CONFIG) -> bytes:
    """
    Write Tag Memory payload for the EPC bank

    AP(4) MemBank(1) SA(2) DL(2, words) Data
    """
    epc = bytes(epc)
    if len(epc) != config.epc_length_bytes:
        raise InvalidParameterError(f"EPC must be {config.epc_length_bytes} bytes")
    return (_check_password(password)
            + struct.pack('>BHH', config.mem_bank_epc, config.epc_write_start_addr, len(epc) // 2)
            + epc)


def build_lock_tag(password: bytes, lock_payload: bytes) -> bytes:
    lock_payload = bytes(lock_payload)
    if len(lock_payload) != 3:
        raise InvalidParameterError("Lock payload must be 3 bytes")
    return _check_password(password) + lock_payload


def parse_tag_read(payload: bytes, device_name: str = "") -> Optional[RFIDTag]:
    """
    Parse tag poll data

    Layout: RSSI(1) PC(2) EPC(n) [CRC-16(2)]. The EPC length comes from PC bits
    15..11 (in words); without it every byte after PC is taken as EPC.
    """
    if len(payload) < 3:
        logger.warning(f"Tag poll data too short: {len(payload)} bytes")
        return None

    rssi = payload[0]
    pc = (payload[1] << 8) | payload[2]
    available = len(payload) - 3
    epc_len = ((pc >> 11) & 0x1F) * 2
    if not 0 < epc_len <= available:
        epc_len = available

    epc = payload[3:3 + epc_len]
    if not epc:
        logger.warning("Empty EPC in tag poll data")
        return None

    return RFIDTag(epc=bytes_to_hex(epc), rssi=rssi, pc=pc, device_name=device_name)


def pc_for_epc(epc_length_bytes: int) -> int:
    """PC word announcing an EPC of the given length"""
    return ((epc_length_bytes // 2) & 0x1F) << 11
