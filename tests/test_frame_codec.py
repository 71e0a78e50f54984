"""
Tests for the UHF frame codec
"""

import unittest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from uhf_provisioner.config import DEFAULT_CONFIG
from uhf_provisioner.exceptions import ChecksumError, FrameError, InvalidParameterError
from uhf_provisioner.frame_codec import (
    Frame, FrameDecoder, FrameType, build_get_firmware_version, build_lock_tag,
    build_multiple_poll, build_read_data, build_set_rf_power, build_write_epc,
    checksum, decode, encode, hex_dump, parse_tag_read, pc_for_epc,
)

FIRMWARE_REQUEST = bytes([0xBB, 0x00, 0x03, 0x00, 0x01, 0x00, 0x04, 0x7E])


class TestEncode(unittest.TestCase):
    """Test cases for frame encoding"""

    def test_firmware_request_bytes(self):
        """Test the documented Get Firmware Version frame"""
        self.assertEqual(encode(0x03, build_get_firmware_version()), FIRMWARE_REQUEST)

    def test_empty_payload(self):
        """Test a command with no parameters"""
        self.assertEqual(encode(0x22), bytes([0xBB, 0x00, 0x22, 0x00, 0x00, 0x22, 0x7E]))

    def test_checksum_wraps(self):
        """Test the checksum keeps only the low byte"""
        payload = bytes([0xFF] * 4)
        frame = encode(0x49, payload)
        self.assertEqual(frame[-2], checksum(frame[1:-2]))
        self.assertEqual(frame[-2], (0x00 + 0x49 + 0x00 + 0x04 + 4 * 0xFF) & 0xFF)

    def test_long_payload_length_field(self):
        """Test a payload longer than 255 bytes uses both length bytes"""
        payload = bytes(i & 0xFF for i in range(300))
        frame = encode(0x49, payload)
        self.assertEqual(frame[3:5], b'\x01\x2C')
        self.assertEqual(len(frame), 7 + 300)

    def test_payload_too_long(self):
        with self.assertRaises(InvalidParameterError):
            encode(0x49, bytes(0x10000))

    def test_alternate_header(self):
        frame = encode(0x22, header=0xBF)
        self.assertEqual(frame[0], 0xBF)


class TestDecode(unittest.TestCase):
    """Test cases for frame decoding"""

    def test_round_trip(self):
        """Test decode reproduces command and payload"""
        for command in (0x03, 0x22, 0x27, 0x28, 0x39, 0x49, 0x82, 0xB6, 0xB7):
            for length in (0, 1, 2, 21, 255, 256, 1024):
                payload = bytes((i * 7) & 0xFF for i in range(length))
                frame, remaining = decode(encode(command, payload))
                self.assertEqual(frame.command, command)
                self.assertEqual(frame.payload, payload)
                self.assertEqual(remaining, b'')

    def test_max_payload_round_trip(self):
        payload = bytes(0xFFFF)
        frame, _ = decode(encode(0x49, payload))
        self.assertEqual(len(frame.payload), 0xFFFF)

    def test_incomplete_frame(self):
        """Test a partial frame is kept for more bytes"""
        data = encode(0x22, b'\x01\x02\x03')
        frame, remaining = decode(data[:-3])
        self.assertIsNone(frame)
        self.assertEqual(remaining, data[:-3])

    def test_leading_garbage_skipped(self):
        data = b'\xFF\xFF' + FIRMWARE_REQUEST
        frame, remaining = decode(data)
        self.assertEqual(frame.command, 0x03)
        self.assertEqual(remaining, b'')

    def test_stray_bytes_between_frames(self):
        """Test leftover bytes start exactly at the next frame's header"""
        first = encode(0xB7, b'\x10\x14', FrameType.RESPONSE)
        second = encode(0x22, b'', FrameType.COMMAND)
        frame, remaining = decode(first + b'\x01\x02\x03' + second)
        self.assertEqual(frame.command, 0xB7)
        self.assertEqual(frame.payload, b'\x10\x14')
        self.assertEqual(remaining, second)

    def test_stray_header_value_between_frames(self):
        """Test a stray 0xBB or 0xBF does not shadow the next frame"""
        first = encode(0xB7, b'\x10\x14', FrameType.RESPONSE)
        second = encode(0x22, b'', FrameType.COMMAND)
        for stray in (b'\xBB\x01\x02', b'\x01\xBF\x00', b'\xBB\xBF\x01'):
            frame, remaining = decode(first + stray + second)
            self.assertEqual(frame.command, 0xB7)
            self.assertEqual(remaining, second)

    def test_corrupted_checksum(self):
        """Test a bad checksum is rejected without losing the next frame"""
        bad = bytearray(encode(0x22, b'\x01\x02', FrameType.RESPONSE))
        bad[-2] ^= 0x55
        good = encode(0xB7, b'\x10\x1E', FrameType.RESPONSE)

        with self.assertRaises(ChecksumError) as ctx:
            decode(bytes(bad) + good)
        self.assertEqual(ctx.exception.remaining, good)

        frame, remaining = decode(ctx.exception.remaining)
        self.assertEqual(frame.payload, b'\x10\x1E')

    def test_bad_end_marker(self):
        bad = bytearray(FIRMWARE_REQUEST)
        bad[-1] = 0x00
        with self.assertRaises(FrameError):
            decode(bytes(bad))

    def test_alternate_header_accepted(self):
        frame, _ = decode(encode(0x22, b'\x10', FrameType.RESPONSE, header=0xBF))
        self.assertEqual(frame.header, 0xBF)
        self.assertTrue(frame.is_response)

    def test_frame_flags(self):
        error, _ = decode(encode(0xFF, b'\x15', FrameType.RESPONSE))
        self.assertTrue(error.is_error_frame)
        notice, _ = decode(encode(0x27, b'\x00', FrameType.NOTICE))
        self.assertTrue(notice.is_notice)
        self.assertFalse(notice.is_error_frame)

    def test_frame_to_bytes(self):
        frame, _ = decode(FIRMWARE_REQUEST)
        self.assertEqual(frame.to_bytes(), FIRMWARE_REQUEST)


class TestFrameDecoder(unittest.TestCase):
    """Test cases for the streaming decoder"""

    def test_split_chunks(self):
        """Test frames split across reads are reassembled"""
        data = encode(0xB7, b'\x10\x14', FrameType.RESPONSE) + FIRMWARE_REQUEST
        decoder = FrameDecoder()
        frames = []
        for i in range(len(data)):
            frames.extend(decoder.feed(data[i:i + 1]))
        self.assertEqual([f.command for f in frames], [0xB7, 0x03])
        self.assertEqual(decoder.pending, b'')

    def test_skips_corrupt_frames(self):
        bad = bytearray(encode(0x22, b'\x01', FrameType.RESPONSE))
        bad[-2] ^= 0x01
        decoder = FrameDecoder()
        frames = decoder.feed(bytes(bad) + FIRMWARE_REQUEST)
        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0].command, 0x03)
        self.assertEqual(decoder.errors, 1)

    def test_recovers_after_stray_header_value(self):
        """Test frames keep flowing when stray bytes hold a header value"""
        data = (encode(0xB7, b'\x10\x14', FrameType.RESPONSE) + b'\xBB\x01\x02'
                + FIRMWARE_REQUEST + encode(0x28, b'\x10', FrameType.RESPONSE))
        decoder = FrameDecoder()
        frames = []
        for i in range(len(data)):
            frames.extend(decoder.feed(data[i:i + 1]))
        self.assertEqual([f.command for f in frames], [0xB7, 0x03, 0x28])
        self.assertEqual(decoder.pending, b'')

    def test_buffer_limit(self):
        """Test a runaway length field does not grow the buffer forever"""
        decoder = FrameDecoder(max_buffer=32)
        decoder.feed(bytes([0xBB, 0x01, 0x22, 0xFF, 0xFF]) + bytes(40))
        self.assertLessEqual(len(decoder.pending), 32)

    def test_reset(self):
        decoder = FrameDecoder()
        decoder.feed(FIRMWARE_REQUEST[:4])
        decoder.reset()
        self.assertEqual(decoder.pending, b'')


class TestPayloadBuilders(unittest.TestCase):
    """Test cases for command payloads"""

    def test_multiple_poll(self):
        self.assertEqual(build_multiple_poll(), b'\x00\x00')
        self.assertEqual(build_multiple_poll(0x0102), b'\x01\x02')

    def test_set_rf_power(self):
        self.assertEqual(build_set_rf_power(20), b'\x14')
        with self.assertRaises(InvalidParameterError):
            build_set_rf_power(31)
        with self.assertRaises(InvalidParameterError):
            build_set_rf_power(-1)

    def test_write_epc(self):
        epc = bytes.fromhex("5356AABBCCDDEEFF11223344")
        payload = build_write_epc(b'\x00' * 4, epc)
        self.assertEqual(payload[:4], b'\x00' * 4)
        self.assertEqual(payload[4], 0x01)
        self.assertEqual(payload[5:7], b'\x00\x02')
        self.assertEqual(payload[7:9], b'\x00\x06')
        self.assertEqual(payload[9:], epc)

    def test_write_epc_rejects_bad_lengths(self):
        with self.assertRaises(InvalidParameterError):
            build_write_epc(b'\x00' * 3, bytes(12))
        with self.assertRaises(InvalidParameterError):
            build_write_epc(b'\x00' * 4, bytes(8))

    def test_lock_tag(self):
        payload = build_lock_tag(b'\x00' * 4, DEFAULT_CONFIG.lock_payload)
        self.assertEqual(payload, b'\x00\x00\x00\x00\x02\x00\x80')
        with self.assertRaises(InvalidParameterError):
            build_lock_tag(b'\x00' * 4, b'\x02')

    def test_read_data(self):
        payload = build_read_data(b'\x00' * 4, 0x02, 0, 6)
        self.assertEqual(payload, b'\x00\x00\x00\x00\x02\x00\x00\x00\x06')


class TestParseTagRead(unittest.TestCase):
    """Test cases for tag poll data"""

    def test_parse_with_crc(self):
        epc = bytes.fromhex("5356AABBCCDDEEFF11223344")
        payload = bytes([0xC8]) + pc_for_epc(12).to_bytes(2, 'big') + epc + b'\xAB\xCD'
        tag = parse_tag_read(payload, "/dev/ttyUSB0")
        self.assertEqual(tag.epc, "5356AABBCCDDEEFF11223344")
        self.assertEqual(tag.rssi, 0xC8)
        self.assertEqual(tag.pc, 0x3000)
        self.assertEqual(tag.device_name, "/dev/ttyUSB0")
        self.assertTrue(tag.is_vendor_tag)

    def test_parse_without_pc_length(self):
        """Test the EPC falls back to every byte after PC"""
        payload = b'\xC8\x00\x00' + bytes.fromhex("E2801170")
        tag = parse_tag_read(payload)
        self.assertEqual(tag.epc, "E2801170")
        self.assertFalse(tag.is_vendor_tag)

    def test_parse_too_short(self):
        self.assertIsNone(parse_tag_read(b'\xC8\x30'))
        self.assertIsNone(parse_tag_read(b'\xC8\x30\x00'))

    def test_hex_dump(self):
        self.assertEqual(hex_dump(b'\xBB\x00\x7E'), "BB 00 7E")

    def test_frame_str(self):
        frame = Frame(0xBB, FrameType.RESPONSE, 0xB7, b'\x10\x14', 0xDC)
        self.assertIn("GetRfPower", str(frame))


if __name__ == "__main__":
    unittest.main()
