"""Tests for PE header structures, the header model and layout helpers."""

import struct

import pytest

from pecore.errors import ParseError
from pecore.types import (
    DATA_DIRECTORY_SIZE,
    DEFAULT_DOS_STUB,
    DOS_MAGIC,
    IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE,
    IMAGE_FILE_DLL,
    IMAGE_FILE_EXECUTABLE_IMAGE,
    IMAGE_FILE_MACHINE_AMD64,
    IMAGE_FILE_MACHINE_I386,
    IMAGE_NT_OPTIONAL_HDR32_MAGIC,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    PE_SIGNATURE,
    BaseRelocationBlock,
    CoffHeader,
    DosHeader,
    HeaderModel,
    ImageDataDirectory,
    ImportDescriptor,
    OptionalHeader32,
    OptionalHeader64,
    PEType,
    SectionHeader,
    decode_section_name,
    is_power_of_two,
    parse_optional_header,
    round_down_to_alignment,
    round_down_to_page,
    round_up_to_alignment,
    round_up_to_page,
    section_name_to_bytes,
)


class TestDosHeader:
    """Tests for DOS header parsing."""

    def test_parse_valid_header(self):
        """Test parsing a valid DOS header."""
        data = bytearray(64)
        struct.pack_into("<H", data, 0, DOS_MAGIC)  # e_magic = "MZ"
        struct.pack_into("<I", data, 60, 0x80)  # e_lfanew = 0x80

        header = DosHeader.from_bytes(data)
        assert header.e_magic == DOS_MAGIC
        assert header.e_lfanew == 0x80

    def test_parse_bad_magic_raises(self):
        """Test that invalid magic raises ParseError."""
        data = bytearray(64)
        struct.pack_into("<H", data, 0, 0x1234)  # Bad magic

        with pytest.raises(ParseError, match="bad magic"):
            DosHeader.from_bytes(data)

    def test_data_too_short_raises(self):
        """Test that short data raises a ValueError subclass."""
        data = bytearray(32)  # Too short

        with pytest.raises(ValueError, match="Data too short for DOS header"):
            DosHeader.from_bytes(data)

    def test_roundtrip_serialization(self):
        """Test that parse -> serialize produces identical bytes."""
        data = bytearray(64)
        struct.pack_into("<H", data, 0, DOS_MAGIC)
        struct.pack_into("<I", data, 60, 0x100)
        data[0x1C:0x24] = b"reserved"

        header = DosHeader.from_bytes(data)
        assert header.to_bytes() == bytes(data)

    def test_write_to_buffer(self):
        """Test writing header to buffer at offset."""
        header = DosHeader.default(e_lfanew=0x80)
        output = bytearray(128)
        header.write_to(output, 32)

        written = DosHeader.from_bytes(output, 32)
        assert written.e_magic == DOS_MAGIC
        assert written.e_lfanew == 0x80

    def test_default_points_past_stub(self):
        """Default e_lfanew leaves room for the standard DOS stub."""
        header = DosHeader.default()
        assert header.e_lfanew == 64 + len(DEFAULT_DOS_STUB)


class TestCoffHeader:
    """Tests for COFF header parsing."""

    def test_parse_valid_header(self):
        """Test parsing a valid COFF header."""
        data = bytearray(20)
        struct.pack_into(
            "<HHIIIHH",
            data,
            0,
            0x8664,  # Machine = AMD64
            5,  # NumberOfSections
            0x12345678,  # TimeDateStamp
            0,  # PointerToSymbolTable
            0,  # NumberOfSymbols
            240,  # SizeOfOptionalHeader
            IMAGE_FILE_EXECUTABLE_IMAGE | IMAGE_FILE_DLL,  # Characteristics
        )

        header = CoffHeader.from_bytes(data)
        assert header.Machine == 0x8664
        assert header.NumberOfSections == 5
        assert header.SizeOfOptionalHeader == 240
        assert header.is_dll is True
        assert header.is_executable is True

    def test_is_dll_property(self):
        """Test is_dll property for an executable."""
        data = bytearray(20)
        struct.pack_into(
            "<HHIIIHH", data, 0, 0x8664, 1, 0, 0, 0, 240, IMAGE_FILE_EXECUTABLE_IMAGE
        )

        header = CoffHeader.from_bytes(data)
        assert header.is_dll is False

    def test_truncated_raises(self):
        """A COFF header cut short is a ParseError."""
        with pytest.raises(ParseError, match="Data too short for COFF header: 10 < 20"):
            CoffHeader.from_bytes(bytes(10))

    def test_roundtrip_serialization(self):
        """Test that parse -> serialize produces identical bytes."""
        data = bytearray(20)
        struct.pack_into("<HHIIIHH", data, 0, 0x8664, 3, 0x11111111, 0, 0, 240, 0x22)

        header = CoffHeader.from_bytes(data)
        assert header.to_bytes() == bytes(data)


class TestOptionalHeader:
    """Tests for PE32 and PE32+ optional headers."""

    def test_parse_selects_pe32_plus(self):
        """Magic 0x20B selects the PE32+ layout."""
        data = OptionalHeader64(
            IMAGE_NT_OPTIONAL_HDR64_MAGIC, 14, 0, 0, 0, 0, 0x1000, 0x1000,
            0x140000000, 0x1000, 0x200, 6, 0, 0, 0, 6, 0, 0, 0x5000, 0x400,
            0, 3, IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE, 0, 0, 0, 0, 0, 16,
        ).to_bytes()
        assert len(data) == 112

        header = parse_optional_header(data, 0)
        assert isinstance(header, OptionalHeader64)
        assert header.ImageBase == 0x140000000
        assert header.is_pe32_plus is True
        assert header.has_aslr is True
        assert header.THUNK_SIZE == 8

    def test_parse_selects_pe32(self):
        """Magic 0x10B selects the PE32 layout with BaseOfData."""
        data = OptionalHeader32(
            IMAGE_NT_OPTIONAL_HDR32_MAGIC, 14, 0, 0, 0, 0, 0x1000, 0x1000, 0x2000,
            0x400000, 0x1000, 0x200, 6, 0, 0, 0, 6, 0, 0, 0x5000, 0x400,
            0, 3, 0, 0, 0, 0, 0, 0, 16,
        ).to_bytes()
        assert len(data) == 96

        header = parse_optional_header(data, 0)
        assert isinstance(header, OptionalHeader32)
        assert header.BaseOfData == 0x2000
        assert header.is_pe32_plus is False
        assert header.has_aslr is False
        assert header.THUNK_SIZE == 4

    def test_unknown_magic_raises(self):
        """Test that an unknown magic raises ParseError."""
        data = bytearray(112)
        struct.pack_into("<H", data, 0, 0x107)  # ROM image

        with pytest.raises(ParseError, match="Unknown optional header magic: 0x0107"):
            parse_optional_header(data, 0)

    def test_wrong_magic_for_class_raises(self):
        """Parsing a PE32 header with the PE32+ class is rejected."""
        data = bytearray(112)
        struct.pack_into("<H", data, 0, IMAGE_NT_OPTIONAL_HDR32_MAGIC)

        with pytest.raises(ParseError, match="Unexpected optional header magic"):
            OptionalHeader64.from_bytes(data)

    def test_checksum_at_offset_64(self):
        """CheckSum sits at the same offset in both variants."""
        for pe_type in PEType:
            header = HeaderModel.default(pe_type).optional_header
            header.CheckSum = 0xDEADBEEF
            assert struct.unpack_from("<I", header.to_bytes(), 64)[0] == 0xDEADBEEF


class TestSectionHeader:
    """Tests for section header parsing."""

    def _make_section_header(self, name: bytes) -> bytes:
        data = bytearray(40)
        struct.pack_into(
            "<8sIIIIIIHHI", data, 0, name, 0x100, 0x1000, 0x200, 0x400, 0, 0, 0, 0, 0x60000020
        )
        return bytes(data)

    def test_name_str_property(self):
        """Test name_str property strips null padding."""
        header = SectionHeader.from_bytes(self._make_section_header(b".text"))
        assert header.name_str == ".text"

    def test_name_str_full_8_chars(self):
        """Test name_str with exactly 8 characters (no null terminator)."""
        header = SectionHeader.from_bytes(self._make_section_header(b".hip_fat"))
        assert header.name_str == ".hip_fat"

    def test_roundtrip_serialization(self):
        """Test that parse -> serialize produces identical bytes."""
        data = self._make_section_header(b".rdata")
        assert SectionHeader.from_bytes(data).to_bytes() == data


class TestSmallStructures:
    """Tests for data directory, relocation block and import descriptor."""

    def test_parse_data_directory(self):
        """Test parsing a valid data directory."""
        data = bytearray(8)
        struct.pack_into("<II", data, 0, 0x3000, 0x500)

        dd = ImageDataDirectory.from_bytes(data)
        assert dd.VirtualAddress == 0x3000
        assert dd.Size == 0x500

    def test_num_entries_property(self):
        """Test num_entries property calculation."""
        data = bytearray(8)
        # BlockSize = 8 (header) + 8*2 (entries) = 24
        struct.pack_into("<II", data, 0, 0x1000, 24)

        block = BaseRelocationBlock.from_bytes(data)
        assert block.num_entries == 8

    def test_null_import_descriptor(self):
        """An all-zero descriptor terminates the import table."""
        assert ImportDescriptor.from_bytes(bytes(20)).is_null is True
        assert ImportDescriptor(0, 0, 0, 0x2000, 0).is_null is False


class TestHeaderModel:
    """Tests for the header model of an image."""

    @pytest.mark.parametrize(
        "pe_type,machine,table_offset",
        [
            (PEType.PE32_PLUS, IMAGE_FILE_MACHINE_AMD64, 0x80 + 24 + 240),
            (PEType.PE32, IMAGE_FILE_MACHINE_I386, 0x80 + 24 + 224),
        ],
    )
    def test_default_offsets(self, pe_type, machine, table_offset):
        """Default headers place the section table after 16 directories."""
        headers = HeaderModel.default(pe_type)
        assert headers.pe_type is pe_type
        assert headers.coff_header.Machine == machine
        assert headers.optional_header.NumberOfRvaAndSizes == 16
        assert headers.section_table_offset == table_offset
        assert headers.section_table_end(2) == table_offset + 80

    def test_to_bytes_layout(self):
        """Serialized headers carry MZ, stub, PE signature and directories."""
        headers = HeaderModel.default(PEType.PE32_PLUS)
        directories = b"\x11" * (16 * DATA_DIRECTORY_SIZE)
        data = headers.to_bytes(directories)

        assert len(data) == headers.section_table_offset
        assert data[:2] == b"MZ"
        assert data[64 : 64 + len(DEFAULT_DOS_STUB)] == DEFAULT_DOS_STUB
        assert data[0x80:0x84] == PE_SIGNATURE
        offset = headers.data_directories_offset
        assert data[offset : offset + len(directories)] == directories


class TestHelpers:
    """Tests for helper functions."""

    def test_round_up_to_alignment(self):
        """Test rounding up to alignment boundary."""
        assert round_up_to_alignment(0, 0x200) == 0
        assert round_up_to_alignment(1, 0x200) == 0x200
        assert round_up_to_alignment(0x200, 0x200) == 0x200
        assert round_up_to_alignment(0x201, 0x200) == 0x400
        assert round_up_to_alignment(0x123, 0) == 0x123

    def test_round_down_to_alignment(self):
        """Test rounding down to alignment boundary."""
        assert round_down_to_alignment(0x1FF, 0x200) == 0
        assert round_down_to_alignment(0x3FF, 0x200) == 0x200

    def test_page_rounding(self):
        """Test page rounding helpers."""
        assert round_up_to_page(0x1001) == 0x2000
        assert round_down_to_page(0x1FFF) == 0x1000

    def test_is_power_of_two(self):
        """Only positive powers of two qualify."""
        assert is_power_of_two(0x200)
        assert not is_power_of_two(0)
        assert not is_power_of_two(0x300)

    def test_section_name_to_bytes(self):
        """Test section name conversion."""
        assert section_name_to_bytes(".text") == b".text\x00\x00\x00"
        assert section_name_to_bytes(".hip_fat") == b".hip_fat"

    def test_section_name_too_long_raises(self):
        """Test that names over 8 bytes raise ValueError."""
        with pytest.raises(ValueError, match="too long"):
            section_name_to_bytes(".toolong_")

    def test_decode_section_name_stops_at_nul(self):
        """Bytes after the first NUL are not part of the name."""
        assert decode_section_name(b".a\x00junk\x00") == ".a"
