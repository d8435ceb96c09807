"""Tests for RVA / VA / file offset translation."""

import pytest

import pecore

from pecore.address import AddressTranslator
from pecore.errors import (
    AddressError,
    BelowImageBaseError,
    NoFileBackingError,
    UnmappedAddressError,
)
from pecore.section import Section, SectionTable

IMAGE_BASE = 0x140000000


@pytest.fixture
def translator() -> AddressTranslator:
    sections = SectionTable(
        [
            Section(
                name=".text",
                virtual_address=0x1000,
                virtual_size=0x180,
                raw_offset=0x400,
                raw_size=0x200,
            ),
            Section(
                name=".bss",
                virtual_address=0x2000,
                virtual_size=0x3000,
                raw_offset=0x600,
                raw_size=0x200,
            ),
        ]
    )
    return AddressTranslator(sections, IMAGE_BASE, header_size=0x400)


class TestRvaToOffset:
    """Tests for rva_to_offset."""

    def test_section_rva(self, translator):
        assert translator.rva_to_offset(0x1000) == 0x400
        assert translator.rva_to_offset(0x1010) == 0x410
        assert translator.rva_to_offset(0x2100) == 0x700

    def test_header_region_is_identity(self, translator):
        """RVAs below the first section map to the same file offset."""
        assert translator.rva_to_offset(0) == 0
        assert translator.rva_to_offset(0x3C) == 0x3C
        assert translator.rva_to_offset(0xFFF) == 0xFFF

    def test_past_raw_data_raises(self, translator):
        """Zero-filled memory has no file backing."""
        with pytest.raises(NoFileBackingError, match="beyond its raw data") as exc_info:
            translator.rva_to_offset(0x2300)
        assert exc_info.value.address == 0x2300

    def test_unmapped_raises(self, translator):
        """RVAs between sections are not mapped."""
        with pytest.raises(UnmappedAddressError, match="not in any section"):
            translator.rva_to_offset(0x1200)
        with pytest.raises(UnmappedAddressError):
            translator.rva_to_offset(0x9000)

    def test_errors_are_value_errors(self, translator):
        with pytest.raises(ValueError):
            translator.rva_to_offset(-1)
        with pytest.raises(AddressError):
            translator.rva_to_offset(0x9000)

    def test_is_mapped(self, translator):
        assert translator.is_mapped(0x1000)
        assert translator.is_mapped(0x100)
        assert not translator.is_mapped(0x2300)
        assert not translator.is_mapped(0x9000)


class TestOffsetToRva:
    """Tests for offset_to_rva."""

    def test_section_offset(self, translator):
        assert translator.offset_to_rva(0x410) == 0x1010
        assert translator.offset_to_rva(0x7FF) == 0x21FF

    def test_header_offset(self, translator):
        assert translator.offset_to_rva(0x100) == 0x100

    def test_unmapped_offset_raises(self, translator):
        with pytest.raises(UnmappedAddressError, match="File offset 0x800"):
            translator.offset_to_rva(0x800)

    def test_inverse_of_rva_to_offset(self, translator):
        for rva in (0x10, 0x1000, 0x1100, 0x2000, 0x21F0):
            assert translator.offset_to_rva(translator.rva_to_offset(rva)) == rva


class TestVirtualAddresses:
    """Tests for VA conversions."""

    def test_rva_va_conversion(self, translator):
        assert translator.rva_to_va(0x1000) == IMAGE_BASE + 0x1000
        assert translator.va_to_rva(IMAGE_BASE + 0x2000) == 0x2000

    def test_va_to_offset(self, translator):
        assert translator.va_to_offset(IMAGE_BASE + 0x1010) == 0x410

    def test_below_image_base_raises(self, translator):
        with pytest.raises(BelowImageBaseError, match="below image base"):
            translator.va_to_rva(0x1000)


class TestOverlappingSections:
    """Malformed tables with overlapping sections resolve to the first match."""

    def test_first_section_wins(self):
        sections = SectionTable(
            [
                Section(name=".a", virtual_address=0x1000, virtual_size=0x2000,
                        raw_offset=0x400, raw_size=0x2000),
                Section(name=".b", virtual_address=0x2000, virtual_size=0x1000,
                        raw_offset=0x2400, raw_size=0x1000),
            ]
        )
        translator = AddressTranslator(sections, IMAGE_BASE)
        assert sections.find_by_rva(0x2100).name == ".a"
        assert translator.rva_to_offset(0x2100) == 0x1500

    def test_no_sections_uses_header_size(self):
        translator = AddressTranslator(SectionTable(), IMAGE_BASE, header_size=0x200)
        assert translator.rva_to_offset(0x1FF) == 0x1FF
        with pytest.raises(UnmappedAddressError):
            translator.rva_to_offset(0x200)


class TestParsedSections:
    """Translation agrees with the section table of a parsed image."""

    def test_section_start_is_raw_offset(self, pe_image):
        binary = pecore.parse(pe_image.data)
        for section in binary.sections:
            assert binary.rva_to_offset(section.virtual_address) == section.raw_offset

    def test_va_and_rva_agree(self, pe_image):
        binary = pecore.parse(pe_image.data)
        for section in binary.sections:
            for rva in (section.virtual_address, section.end_rva - 1):
                offset = binary.rva_to_offset(rva)
                assert binary.va_to_offset(binary.image_base + rva) == offset
                assert binary.offset_to_rva(offset) == rva
