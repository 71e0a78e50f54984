"""
Tests for configuration and exceptions
"""

import os
import unittest
import sys
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).parent.parent))

from uhf_provisioner.config import DEFAULT_CONFIG, TESTING_CONFIG, RfidConfig, get_config
from uhf_provisioner.exceptions import (
    CommandTimeout, ConnectionError, IllegalStatusTransition, InvalidParameterError,
    ModuleError, ReaderNotConnectedError, TimeoutError, UHFReaderError,
    describe_response_code,
)
from uhf_provisioner.rfid_tag import TagStatus


class TestRfidConfig(unittest.TestCase):
    """Test cases for RfidConfig"""

    def test_defaults(self):
        self.assertEqual(DEFAULT_CONFIG.frame_header, 0xBB)
        self.assertEqual(DEFAULT_CONFIG.frame_end, 0x7E)
        self.assertEqual(DEFAULT_CONFIG.baud_rate, 115200)
        self.assertEqual(DEFAULT_CONFIG.epc_prefix, "5356")
        self.assertEqual(DEFAULT_CONFIG.epc_length_hex, 24)
        self.assertEqual(DEFAULT_CONFIG.epc_random_length_bytes, 10)
        self.assertEqual(DEFAULT_CONFIG.access_password, b'\x00' * 4)
        self.assertEqual(DEFAULT_CONFIG.frame_headers, (0xBB, 0xBF))

    def test_immutable(self):
        with self.assertRaises(AttributeError):
            DEFAULT_CONFIG.baud_rate = 9600

    def test_validation(self):
        with self.assertRaises(InvalidParameterError):
            RfidConfig(rf_power=31)
        with self.assertRaises(InvalidParameterError):
            RfidConfig(access_password=b'\x00')
        with self.assertRaises(InvalidParameterError):
            RfidConfig(epc_prefix="53G6")
        with self.assertRaises(InvalidParameterError):
            RfidConfig(epc_prefix="535")
        with self.assertRaises(InvalidParameterError):
            RfidConfig(enable_line="cts")
        with self.assertRaises(InvalidParameterError):
            RfidConfig(write_attempts=0)

    def test_with_overrides(self):
        config = DEFAULT_CONFIG.with_overrides(rf_power=26)
        self.assertEqual(config.rf_power, 26)
        self.assertEqual(DEFAULT_CONFIG.rf_power, 20)

    def test_from_env(self):
        env = {
            'UHF_PORT': '/dev/ttyUSB1',
            'UHF_BAUD_RATE': '57600',
            'UHF_RF_POWER': '25',
            'UHF_ACCESS_PASSWORD': '12345678',
            'UHF_LOCK_TAGS': 'false',
            'UHF_ENABLE_LINE': 'none',
            'UHF_NO_TAG_TIMEOUT_MS': '5000',
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = RfidConfig.from_env()
        self.assertEqual(config.port, '/dev/ttyUSB1')
        self.assertEqual(config.baud_rate, 57600)
        self.assertEqual(config.rf_power, 25)
        self.assertEqual(config.access_password, bytes.fromhex('12345678'))
        self.assertFalse(config.lock_tags)
        self.assertIsNone(config.enable_line)
        self.assertEqual(config.no_tag_timeout, 5.0)

    def test_from_env_bad_password(self):
        with mock.patch.dict(os.environ, {'UHF_ACCESS_PASSWORD': 'zz'}, clear=True):
            with self.assertRaises(InvalidParameterError):
                RfidConfig.from_env()

    def test_get_config_profiles(self):
        with mock.patch.dict(os.environ, {'UHF_ENV': 'testing'}, clear=True):
            self.assertEqual(get_config(), TESTING_CONFIG)
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_config(), DEFAULT_CONFIG)
            self.assertEqual(get_config('unknown'), DEFAULT_CONFIG)


class TestExceptions(unittest.TestCase):
    """Test cases for custom exceptions"""

    def test_uhf_reader_error(self):
        error = UHFReaderError("Test error")
        self.assertEqual(str(error), "Test error")

    def test_reader_not_connected_error(self):
        error = ReaderNotConnectedError("Reader not connected")
        self.assertEqual(str(error), "Reader not connected")
        self.assertIsInstance(error, UHFReaderError)

    def test_connection_error_is_package_error(self):
        self.assertTrue(issubclass(ConnectionError, UHFReaderError))

    def test_timeout_alias(self):
        self.assertIs(TimeoutError, CommandTimeout)
        error = CommandTimeout(0x49, 2.0)
        self.assertIn("0x49", str(error))
        self.assertIn("2000ms", str(error))

    def test_module_error(self):
        error = ModuleError(0x17, 0x49)
        self.assertEqual(error.message, "Write operation failed")
        self.assertTrue(error.retryable)
        self.assertFalse(ModuleError(0x14).retryable)
        self.assertIn("0x17", str(error))

    def test_describe_response_code(self):
        self.assertEqual(describe_response_code(0x15), "Tag not found")
        self.assertEqual(describe_response_code(0xFF), "Unknown error (0xFF)")

    def test_invalid_parameter_is_value_error(self):
        self.assertTrue(issubclass(InvalidParameterError, ValueError))

    def test_illegal_transition_message(self):
        error = IllegalStatusTransition(TagStatus.FAILED, TagStatus.RETIRED)
        self.assertEqual(str(error), "Cannot move tag from failed to retired")


if __name__ == "__main__":
    unittest.main()
