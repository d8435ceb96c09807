"""
Address translation between RVAs, virtual addresses and file offsets.

The translator holds no state of its own: it is built over a SectionTable and
the image base and answers queries against them. The header region (offset 0
up to the first section) maps with the identity function.
"""

from .errors import BelowImageBaseError, NoFileBackingError, UnmappedAddressError
from .section import SectionTable


class AddressTranslator:
    """Convert between RVA, VA and file offset.

    Usage:
        translator = AddressTranslator(binary.section_table, image_base)
        offset = translator.rva_to_offset(0x1000)
    """

    def __init__(
        self,
        sections: SectionTable,
        image_base: int,
        header_size: int = 0,
    ):
        """
        Args:
            sections: Section table to translate against
            image_base: Preferred load address
            header_size: Extent of the header region when there are no sections
        """
        self._sections = sections
        self._image_base = image_base
        self._header_size = header_size

    def _header_end_rva(self) -> int:
        first = self._sections.first_virtual_address()
        return self._header_size if first is None else first

    def _header_end_offset(self) -> int:
        first_rva = self._header_end_rva()
        first_raw = self._sections.first_raw_offset()
        if first_raw is None:
            return first_rva
        return min(first_rva, first_raw)

    def rva_to_offset(self, rva: int) -> int:
        """Convert an RVA to a file offset.

        Raises:
            NoFileBackingError: RVA is in a section but past its raw data
            UnmappedAddressError: RVA is neither in a section nor the headers
        """
        if rva < 0:
            raise UnmappedAddressError(f"Negative RVA {rva:#x}", rva)
        section = self._sections.find_by_rva(rva)
        if section is not None:
            delta = rva - section.virtual_address
            if delta >= section.raw_size:
                raise NoFileBackingError(
                    f"RVA 0x{rva:x} is in section {section.name!r} beyond its "
                    f"raw data (0x{section.raw_size:x} bytes)",
                    rva,
                )
            return section.raw_offset + delta
        if rva < self._header_end_rva():
            return rva
        raise UnmappedAddressError(f"RVA 0x{rva:x} not in any section", rva)

    def offset_to_rva(self, offset: int) -> int:
        """Convert a file offset to an RVA.

        Raises:
            UnmappedAddressError: offset is not backed by a section or the headers
        """
        if offset < 0:
            raise UnmappedAddressError(f"Negative file offset {offset:#x}", offset)
        section = self._sections.find_by_offset(offset)
        if section is not None:
            return section.virtual_address + (offset - section.raw_offset)
        if offset < self._header_end_offset():
            return offset
        raise UnmappedAddressError(f"File offset 0x{offset:x} not in any section", offset)

    def rva_to_va(self, rva: int) -> int:
        """Convert RVA to virtual address (ImageBase + RVA)."""
        return self._image_base + rva

    def va_to_rva(self, va: int) -> int:
        """Convert virtual address to RVA (VA - ImageBase)."""
        rva = va - self._image_base
        if rva < 0:
            raise BelowImageBaseError(
                f"VA 0x{va:x} is below image base 0x{self._image_base:x}", va
            )
        return rva

    def va_to_offset(self, va: int) -> int:
        """Convert virtual address to file offset."""
        return self.rva_to_offset(self.va_to_rva(va))

    def is_mapped(self, rva: int) -> bool:
        """True if rva translates to a file offset."""
        try:
            self.rva_to_offset(rva)
        except (UnmappedAddressError, NoFileBackingError):
            return False
        return True
