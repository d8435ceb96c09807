"""
Sections and the ordered section table.

The SectionTable is the authoritative mapping between virtual address space
and file layout. Sections keep every header field so that an unedited image
serializes back to the exact same section table.

Handles returned by Binary.add_section are SectionHandle objects: an index
plus the generation of the binary at the time the handle was created. A
structural edit bumps the generation and the handle stops resolving.
"""

import enum
from dataclasses import dataclass
from typing import Any, Iterator

from .errors import StaleHandleError
from .types import (
    IMAGE_SCN_CNT_CODE,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_CNT_UNINITIALIZED_DATA,
    IMAGE_SCN_MEM_DISCARDABLE,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_WRITE,
    SectionHeader,
    decode_section_name,
    section_name_to_bytes,
)


class SectionType(enum.Enum):
    """Purpose of a section, used to pick default characteristics."""

    TEXT = "text"
    DATA = "data"
    IDATA = "idata"
    RELOCATION = "relocation"
    TLS = "tls"
    RESOURCE = "resource"
    BSS = "bss"

    @property
    def default_characteristics(self) -> int:
        return _DEFAULT_CHARACTERISTICS[self]


_DEFAULT_CHARACTERISTICS = {
    SectionType.TEXT: IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_MEM_READ,
    SectionType.DATA: IMAGE_SCN_CNT_INITIALIZED_DATA
    | IMAGE_SCN_MEM_READ
    | IMAGE_SCN_MEM_WRITE,
    SectionType.IDATA: IMAGE_SCN_CNT_INITIALIZED_DATA
    | IMAGE_SCN_MEM_READ
    | IMAGE_SCN_MEM_WRITE,
    SectionType.RELOCATION: IMAGE_SCN_CNT_INITIALIZED_DATA
    | IMAGE_SCN_MEM_READ
    | IMAGE_SCN_MEM_DISCARDABLE,
    SectionType.TLS: IMAGE_SCN_CNT_INITIALIZED_DATA
    | IMAGE_SCN_MEM_READ
    | IMAGE_SCN_MEM_WRITE,
    SectionType.RESOURCE: IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ,
    SectionType.BSS: IMAGE_SCN_CNT_UNINITIALIZED_DATA
    | IMAGE_SCN_MEM_READ
    | IMAGE_SCN_MEM_WRITE,
}


@dataclass
class Section:
    """A section: header fields plus raw content.

    content holds the bytes stored in the file for this section. It may be
    shorter than raw_size (truncated input, or freshly edited content); the
    builder pads it with zeros up to raw_size.
    """

    name: str = ""
    content: bytes = b""
    virtual_address: int = 0
    virtual_size: int = 0
    raw_offset: int = 0
    raw_size: int = 0
    characteristics: int = 0
    pointer_to_relocations: int = 0
    pointer_to_linenumbers: int = 0
    number_of_relocations: int = 0
    number_of_linenumbers: int = 0
    # Exact name bytes from the file (may carry bytes after the NUL)
    raw_name: bytes | None = None

    @classmethod
    def from_header(cls, header: SectionHeader, content: bytes) -> "Section":
        return cls(
            name=header.name_str,
            content=content,
            virtual_address=header.VirtualAddress,
            virtual_size=header.VirtualSize,
            raw_offset=header.PointerToRawData,
            raw_size=header.SizeOfRawData,
            characteristics=header.Characteristics,
            pointer_to_relocations=header.PointerToRelocations,
            pointer_to_linenumbers=header.PointerToLinenumbers,
            number_of_relocations=header.NumberOfRelocations,
            number_of_linenumbers=header.NumberOfLinenumbers,
            raw_name=header.Name,
        )

    def to_header(self) -> SectionHeader:
        if self.raw_name is not None and decode_section_name(self.raw_name) == self.name:
            name = self.raw_name
        else:
            name = section_name_to_bytes(self.name)
        return SectionHeader(
            Name=name,
            VirtualSize=self.virtual_size,
            VirtualAddress=self.virtual_address,
            SizeOfRawData=self.raw_size,
            PointerToRawData=self.raw_offset,
            PointerToRelocations=self.pointer_to_relocations,
            PointerToLinenumbers=self.pointer_to_linenumbers,
            NumberOfRelocations=self.number_of_relocations,
            NumberOfLinenumbers=self.number_of_linenumbers,
            Characteristics=self.characteristics,
        )

    @property
    def mapped_size(self) -> int:
        """Size used for RVA lookups; a zero virtual size falls back to raw size."""
        return self.virtual_size or self.raw_size

    @property
    def end_rva(self) -> int:
        return self.virtual_address + self.mapped_size

    @property
    def end_raw_offset(self) -> int:
        return self.raw_offset + self.raw_size

    def contains_rva(self, rva: int) -> bool:
        """Check if an RVA falls within this section."""
        return self.virtual_address <= rva < self.end_rva

    def contains_offset(self, offset: int) -> bool:
        """Check if a file offset falls within this section's raw data."""
        if self.raw_size == 0:
            return False
        return self.raw_offset <= offset < self.end_raw_offset

    def has_characteristic(self, flag: int) -> bool:
        return bool(self.characteristics & flag)

    @property
    def padded_content(self) -> bytes:
        """Content truncated or zero padded to exactly raw_size bytes."""
        content = self.content[: self.raw_size]
        return content + b"\x00" * (self.raw_size - len(content))

    def __str__(self) -> str:
        return (
            f"{self.name:<8} va=0x{self.virtual_address:08x} "
            f"vsize=0x{self.virtual_size:08x} raw=0x{self.raw_offset:08x} "
            f"rsize=0x{self.raw_size:08x} flags=0x{self.characteristics:08x}"
        )


class SectionTable:
    """Ordered sequence of sections.

    Table order is file order. Lookups that may match more than one section
    (malformed overlapping input) return the first match in table order.
    """

    def __init__(self, sections: list[Section] | None = None):
        self._sections: list[Section] = list(sections or [])

    def __len__(self) -> int:
        return len(self._sections)

    def __iter__(self) -> Iterator[Section]:
        return iter(self._sections)

    def __getitem__(self, index: int) -> Section:
        return self._sections[index]

    def as_tuple(self) -> tuple[Section, ...]:
        return tuple(self._sections)

    def append(self, section: Section) -> int:
        self._sections.append(section)
        return len(self._sections) - 1

    def index_of(self, section: Section) -> int:
        """Index of a section object owned by this table (identity match)."""
        for idx, candidate in enumerate(self._sections):
            if candidate is section:
                return idx
        raise ValueError(f"Section {section.name!r} is not part of this table")

    def find(self, name: str) -> Section | None:
        """First section with the given name (names longer than 8 are truncated)."""
        search_name = name[:8] if len(name) > 8 else name
        for section in self._sections:
            if section.name == search_name:
                return section
        return None

    def find_by_rva(self, rva: int) -> Section | None:
        for section in self._sections:
            if section.contains_rva(rva):
                return section
        return None

    def find_by_offset(self, offset: int) -> Section | None:
        for section in self._sections:
            if section.contains_offset(offset):
                return section
        return None

    def first_virtual_address(self) -> int | None:
        """Lowest section RVA, which is where the header region ends."""
        if not self._sections:
            return None
        return min(s.virtual_address for s in self._sections)

    def first_raw_offset(self) -> int | None:
        """Lowest file offset holding section data."""
        offsets = [s.raw_offset for s in self._sections if s.raw_size > 0]
        return min(offsets) if offsets else None

    def max_raw_end(self) -> int:
        """Get the maximum file offset used by any section."""
        max_offset = 0
        for section in self._sections:
            if section.raw_size > 0:
                max_offset = max(max_offset, section.end_raw_offset)
        return max_offset

    def max_virtual_end(self) -> int:
        """Get the maximum RVA used by any section."""
        max_rva = 0
        for section in self._sections:
            max_rva = max(max_rva, section.virtual_address + section.mapped_size)
        return max_rva


@dataclass(frozen=True)
class SectionHandle:
    """Stable reference to a section of a Binary.

    Valid until the next structural edit of the binary; afterwards every
    access raises StaleHandleError.
    """

    binary: Any
    index: int
    generation: int

    @property
    def is_valid(self) -> bool:
        return self.generation == self.binary.generation

    @property
    def section(self) -> Section:
        if not self.is_valid:
            raise StaleHandleError(
                f"Section handle #{self.index} is stale: created at generation "
                f"{self.generation}, binary is at {self.binary.generation}"
            )
        return self.binary.sections[self.index]

    @property
    def name(self) -> str:
        return self.section.name

    @property
    def virtual_address(self) -> int:
        return self.section.virtual_address

    @property
    def virtual_size(self) -> int:
        return self.section.virtual_size

    @property
    def raw_offset(self) -> int:
        return self.section.raw_offset

    @property
    def raw_size(self) -> int:
        return self.section.raw_size

    @property
    def content(self) -> bytes:
        return self.section.content
