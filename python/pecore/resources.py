"""
Resource directory root node.

Only the root table is decoded: its entries name the resource types and
point at subdirectories. Anything below the root is left untouched.
"""

from dataclasses import dataclass, field

from .byteview import ByteView
from .errors import ParseError
from .types import ResourceDirectoryTable

RESOURCE_ENTRY_SIZE = 8
RESOURCE_NAME_IS_STRING = 0x80000000
RESOURCE_DATA_IS_DIRECTORY = 0x80000000

# Well-known resource type ids
RT_CURSOR = 1
RT_BITMAP = 2
RT_ICON = 3
RT_MENU = 4
RT_DIALOG = 5
RT_STRING = 6
RT_VERSION = 16
RT_MANIFEST = 24


@dataclass
class ResourceEntry:
    """Entry of the root table: a type id or name and its target."""

    id: int | None
    name: str | None
    offset: int  # Offset of the target, relative to the resource directory
    is_directory: bool

    def __str__(self) -> str:
        label = self.name if self.name is not None else str(self.id)
        kind = "dir" if self.is_directory else "data"
        return f"{label} -> {kind} @ 0x{self.offset:x}"


@dataclass
class ResourceNode:
    """Root resource directory table."""

    characteristics: int = 0
    timestamp: int = 0
    major_version: int = 0
    minor_version: int = 0
    entries: list[ResourceEntry] = field(default_factory=list)

    @property
    def type_ids(self) -> list[int]:
        return [e.id for e in self.entries if e.id is not None]


def parse_resources_root(view: ByteView, offset: int, size: int) -> ResourceNode:
    """Decode the root table located at a file offset."""
    table = ResourceDirectoryTable.from_bytes(view.data, offset)
    count = table.NumberOfNamedEntries + table.NumberOfIdEntries
    entries_size = ResourceDirectoryTable.SIZE + count * RESOURCE_ENTRY_SIZE
    if size and entries_size > size:
        raise ParseError(
            f"Resource root with {count} entries does not fit directory size 0x{size:x}"
        )

    node = ResourceNode(
        characteristics=table.Characteristics,
        timestamp=table.TimeDateStamp,
        major_version=table.MajorVersion,
        minor_version=table.MinorVersion,
    )
    entry_offset = offset + ResourceDirectoryTable.SIZE
    for _ in range(count):
        name_field, data_field = view.unpack("<II", entry_offset, "resource entry")
        entry_offset += RESOURCE_ENTRY_SIZE
        if name_field & RESOURCE_NAME_IS_STRING:
            name_offset = offset + (name_field & ~RESOURCE_NAME_IS_STRING)
            length = view.u16(name_offset)
            raw = view.read(name_offset + 2, length * 2, "resource name")
            entry_id, name = None, raw.decode("utf-16-le", "replace")
        else:
            entry_id, name = name_field & 0xFFFF, None
        node.entries.append(
            ResourceEntry(
                id=entry_id,
                name=name,
                offset=data_field & ~RESOURCE_DATA_IS_DIRECTORY,
                is_directory=bool(data_field & RESOURCE_DATA_IS_DIRECTORY),
            )
        )
    return node
