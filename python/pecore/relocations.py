"""
Base relocation blocks.

The base relocation table consists of blocks, each covering a 4KB page.
Each block has an 8-byte header followed by 16-bit TypeOffset entries:

    15      12 11                  0
    +--------+----------------------+
    |  type  |   offset in page     |
    +--------+----------------------+
"""

import struct
from dataclasses import dataclass, field

from .byteview import ByteView
from .errors import ParseError
from .types import (
    IMAGE_REL_BASED_ABSOLUTE,
    PAGE_SIZE,
    BaseRelocationBlock,
)


@dataclass
class RelocationEntry:
    """Single base relocation entry (TypeOffset)."""

    position: int  # Offset within the page (12 bits)
    type: int  # IMAGE_REL_BASED_* (4 bits)

    @classmethod
    def from_value(cls, value: int) -> "RelocationEntry":
        return cls(position=value & 0xFFF, type=(value >> 12) & 0xF)

    @property
    def value(self) -> int:
        return (self.type << 12) | self.position

    @property
    def is_absolute(self) -> bool:
        """ABSOLUTE entries are padding and should be skipped."""
        return self.type == IMAGE_REL_BASED_ABSOLUTE

    def validate(self) -> None:
        if not 0 <= self.position < PAGE_SIZE:
            raise ValueError(f"Relocation offset 0x{self.position:x} outside a page")
        if not 0 <= self.type <= 0xF:
            raise ValueError(f"Invalid relocation type {self.type}")


@dataclass
class Relocation:
    """One relocation block: a page RVA and its entries."""

    virtual_address: int
    entries: list[RelocationEntry] = field(default_factory=list)

    @property
    def block_size(self) -> int:
        count = len(self.entries)
        if count % 2:
            count += 1
        return BaseRelocationBlock.SIZE + count * 2

    def targets(self) -> list[int]:
        """RVAs patched by the non-padding entries of this block."""
        return [
            self.virtual_address + entry.position
            for entry in self.entries
            if not entry.is_absolute
        ]

    def to_bytes(self) -> bytes:
        """Serialize, padding with an ABSOLUTE entry to keep 32-bit alignment."""
        values = [entry.value for entry in self.entries]
        if len(values) % 2:
            values.append(IMAGE_REL_BASED_ABSOLUTE)
        header = BaseRelocationBlock(PageRVA=self.virtual_address, BlockSize=self.block_size)
        return header.to_bytes() + struct.pack(f"<{len(values)}H", *values)

    def __str__(self) -> str:
        return f"page 0x{self.virtual_address:08x}: {len(self.entries)} entries"


def parse_relocations(
    view: ByteView,
    offset: int,
    size: int,
    max_blocks: int,
) -> list[Relocation]:
    """Decode the relocation blocks in [offset, offset + size).

    A zero BlockSize ends the table early (trailing padding).
    """
    view.check(offset, size, "base relocation table")
    blocks = []
    current = offset
    end = offset + size
    while current + BaseRelocationBlock.SIZE <= end:
        header = BaseRelocationBlock.from_bytes(view.data, current)
        if header.BlockSize == 0:
            break
        if header.BlockSize < BaseRelocationBlock.SIZE or header.BlockSize % 2:
            raise ParseError(
                f"Invalid relocation block size 0x{header.BlockSize:x} at 0x{current:x}"
            )
        if current + header.BlockSize > end:
            raise ParseError(
                f"Relocation block at 0x{current:x} extends past the directory"
            )
        if len(blocks) == max_blocks:
            raise ParseError(f"Relocation table exceeds {max_blocks} blocks")

        count = header.num_entries
        values = view.unpack(
            f"<{count}H", current + BaseRelocationBlock.SIZE, "relocation entries"
        )
        blocks.append(
            Relocation(
                virtual_address=header.PageRVA,
                entries=[RelocationEntry.from_value(v) for v in values],
            )
        )
        current += header.BlockSize
    return blocks


def relocations_to_bytes(relocations: list[Relocation]) -> bytes:
    return b"".join(block.to_bytes() for block in relocations)
