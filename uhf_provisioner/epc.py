"""
EPC identifier generation
"""

import logging
import secrets
from typing import Callable, Container

from .config import DEFAULT_CONFIG, RfidConfig
from .exceptions import EpcGenerationError
from .rfid_tag import bytes_to_hex

logger = logging.getLogger(__name__)


class EpcGenerator:
    """
    Draws vendor-prefixed 96-bit EPCs: the prefix followed by random bytes from
    a cryptographic source, re-drawn on collision with already used EPCs.
    """

    def __init__(self, config: RfidConfig = DEFAULT_CONFIG,
                 random_bytes: Callable[[int], bytes] = secrets.token_bytes):
        self.config = config
        self._random_bytes = random_bytes

    def candidate(self) -> str:
        """One EPC, without a collision check"""
        size = self.config.epc_random_length_bytes
        return self.config.epc_prefix + bytes_to_hex(self._random_bytes(size))

    def generate(self, existing: Container[str] = frozenset()) -> str:
        """
        Generate an EPC not contained in ``existing``

        Raises:
            EpcGenerationError: every draw collided
        """
        attempts = self.config.epc_generation_attempts
        for attempt in range(1, attempts + 1):
            epc = self.candidate()
            if epc not in existing:
                return epc
            logger.debug(f"EPC collision on attempt {attempt}: {epc}")
        raise EpcGenerationError(f"No unused EPC after {attempts} attempts")


def generate_epc(existing: Container[str] = frozenset(),
                 config: RfidConfig = DEFAULT_CONFIG) -> str:
    return EpcGenerator(config).generate(existing)
