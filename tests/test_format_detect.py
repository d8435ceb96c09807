"""Tests for binary format detection."""

import struct

import pytest

from pecore.format_detect import (
    UnsupportedBinaryFormat,
    detect_binary_format,
    detect_format,
    is_pe_binary,
)


class TestDetectFormat:
    """Tests for in-memory detection."""

    def test_pe(self, pe_image):
        assert detect_format(pe_image.data) == "pe"

    @pytest.mark.parametrize(
        "magic,expected",
        [
            (b"\x7fELF", "elf"),
            (b"\xcf\xfa\xed\xfe", "macho"),
            (b"\xfe\xed\xfa\xce", "macho"),
        ],
    )
    def test_other_formats(self, magic, expected):
        assert detect_format(magic + bytes(60)) == expected

    def test_too_small(self):
        with pytest.raises(UnsupportedBinaryFormat, match="File too small"):
            detect_format(b"MZ")

    def test_bad_pe_offset(self):
        data = bytearray(0x100)
        data[:2] = b"MZ"
        struct.pack_into("<I", data, 0x3C, 0x10)
        with pytest.raises(UnsupportedBinaryFormat, match="Invalid PE header offset 0x10"):
            detect_format(bytes(data))

    def test_dos_only_executable(self):
        data = bytearray(0x100)
        data[:2] = b"MZ"
        struct.pack_into("<I", data, 0x3C, 0x80)
        with pytest.raises(UnsupportedBinaryFormat, match="not a PE image: dos.com"):
            detect_format(bytes(data), "dos.com")

    def test_unsupported_is_value_error(self):
        with pytest.raises(ValueError):
            detect_format(b"#!/bin/sh\n")


class TestDetectBinaryFormat:
    """Tests for file-based detection."""

    def test_pe_file(self, pe_file):
        assert detect_binary_format(pe_file) == "pe"
        assert is_pe_binary(pe_file)

    def test_script(self, tmp_path):
        path = tmp_path / "script.sh"
        path.write_bytes(b"#!/bin/sh\necho hi\n")
        assert not is_pe_binary(path)
        with pytest.raises(UnsupportedBinaryFormat, match="script.sh"):
            detect_binary_format(path)

    def test_missing_file(self, tmp_path):
        assert not is_pe_binary(tmp_path / "missing.exe")
        with pytest.raises(FileNotFoundError):
            detect_binary_format(tmp_path / "missing.exe")
