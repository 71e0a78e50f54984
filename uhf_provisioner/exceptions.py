"""
Custom exceptions for the UHF tag provisioning core
"""

from typing import Optional

# Module status codes
RESP_SUCCESS = 0x10
RESP_INVALID_COMMAND = 0x11
RESP_INVALID_PARAMETER = 0x12
RESP_MEMORY_OVERRUN = 0x13
RESP_MEMORY_LOCKED = 0x14
RESP_TAG_NOT_FOUND = 0x15
RESP_READ_FAILED = 0x16
RESP_WRITE_FAILED = 0x17
RESP_LOCK_FAILED = 0x18

RESPONSE_MESSAGES = {
    RESP_SUCCESS: "Success",
    RESP_INVALID_COMMAND: "Invalid command",
    RESP_INVALID_PARAMETER: "Invalid parameter",
    RESP_MEMORY_OVERRUN: "Memory overrun",
    RESP_MEMORY_LOCKED: "Memory is locked",
    RESP_TAG_NOT_FOUND: "Tag not found",
    RESP_READ_FAILED: "Read operation failed",
    RESP_WRITE_FAILED: "Write operation failed",
    RESP_LOCK_FAILED: "Lock operation failed",
}

ERROR_CODES = frozenset(code for code in RESPONSE_MESSAGES if code != RESP_SUCCESS)

# Codes that usually mean the tag moved or the air link glitched
RETRYABLE_CODES = frozenset({
    RESP_INVALID_PARAMETER,
    RESP_TAG_NOT_FOUND,
    RESP_READ_FAILED,
    RESP_WRITE_FAILED,
})


def describe_response_code(code: int) -> str:
    """Get human-readable message for a module response code"""
    return RESPONSE_MESSAGES.get(code, f"Unknown error (0x{code:02X})")


class UHFReaderError(Exception):
    """Base exception for UHF Reader operations"""
    pass

class ConnectionError(UHFReaderError):
    """Raised when the serial port cannot be claimed"""
    pass

class TransportError(UHFReaderError):
    """Raised when the link drops in the middle of an operation"""
    pass

class ReaderNotConnectedError(UHFReaderError):
    """Raised when trying to perform operations on a disconnected reader"""
    pass

class CommandTimeout(UHFReaderError):
    """Raised when no matching response arrives in time"""

    def __init__(self, command: int, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command 0x{command:02X} timed out after {timeout * 1000:.0f}ms")

# Name used by older callers of the SDK
TimeoutError = CommandTimeout

class ModuleError(UHFReaderError):
    """Raised when the module answers with an error status"""

    def __init__(self, code: int, command: Optional[int] = None):
        self.code = code
        self.command = command
        self.message = describe_response_code(code)
        prefix = f"Command 0x{command:02X}: " if command is not None else ""
        super().__init__(f"{prefix}{self.message} (0x{code:02X})")

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

class FrameError(UHFReaderError):
    """Raised for a frame that cannot be decoded

    ``remaining`` holds the buffer to resume decoding from.
    """

    def __init__(self, message: str, raw: bytes = b"", remaining: bytes = b""):
        self.raw = bytes(raw)
        self.remaining = bytes(remaining)
        super().__init__(message)

class ChecksumError(FrameError):
    """Raised when a frame checksum does not match its contents"""
    pass

class InvalidParameterError(UHFReaderError, ValueError):
    """Raised when invalid parameters are provided"""
    pass

class DeviceBusy(UHFReaderError):
    """Raised when the reader is already claimed by another session"""
    pass

class DuplicateEpc(UHFReaderError):
    """Raised by a repository when an EPC is already recorded"""

    def __init__(self, epc: str):
        self.epc = epc
        super().__init__(f"EPC {epc} already exists")

class TagNotFound(UHFReaderError):
    """Raised by a repository when a record id is unknown"""
    pass

class IllegalStatusTransition(UHFReaderError):
    """Raised when a tag record would move backwards in its lifecycle"""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move tag from {current.value} to {requested.value}")

class EpcGenerationError(UHFReaderError):
    """Raised when no unused EPC could be drawn"""
    pass

class VerificationError(UHFReaderError):
    """Raised when a tag does not report the EPC that was written"""

    def __init__(self, expected: str, seen: Optional[str]):
        self.expected = expected
        self.seen = seen
        super().__init__(f"Expected EPC {expected}, tag reported {seen or 'nothing'}")

class RepositoryError(UHFReaderError):
    """Raised when stored tag records cannot be loaded"""
    pass
