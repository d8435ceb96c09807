"""
Data directory registry.

The optional header ends with NumberOfRvaAndSizes (rva, size) pairs. The
registry keeps every pair exactly as parsed, including directories the
parser failed to decode, so an unedited image writes the same table back.
"""

import enum
from dataclasses import dataclass
from typing import Iterator

from .errors import NotFoundError
from .types import IMAGE_NUMBEROF_DIRECTORY_ENTRIES, ImageDataDirectory


class DataDirectoryType(enum.IntEnum):
    """Index of each well-known data directory."""

    EXPORT_TABLE = 0
    IMPORT_TABLE = 1
    RESOURCE_TABLE = 2
    EXCEPTION_TABLE = 3
    CERTIFICATE_TABLE = 4
    BASE_RELOCATION_TABLE = 5
    DEBUG = 6
    ARCHITECTURE = 7
    GLOBAL_PTR = 8
    TLS_TABLE = 9
    LOAD_CONFIG_TABLE = 10
    BOUND_IMPORT = 11
    IAT = 12
    DELAY_IMPORT_DESCRIPTOR = 13
    CLR_RUNTIME_HEADER = 14
    RESERVED = 15


@dataclass
class DataDirectory:
    """One (rva, size) entry of the data directory table.

    For CERTIFICATE_TABLE the rva field holds a file offset. (0, 0) means
    the directory is absent.
    """

    type: DataDirectoryType | int
    rva: int = 0
    size: int = 0

    @property
    def is_present(self) -> bool:
        """Check if this data directory is present."""
        return self.rva != 0 or self.size != 0

    @property
    def holds_file_offset(self) -> bool:
        return self.type == DataDirectoryType.CERTIFICATE_TABLE

    def clear(self) -> None:
        self.rva = 0
        self.size = 0

    def to_struct(self) -> ImageDataDirectory:
        return ImageDataDirectory(VirtualAddress=self.rva, Size=self.size)

    def __str__(self) -> str:
        try:
            name = DataDirectoryType(self.type).name
        except ValueError:
            name = f"DIRECTORY_{int(self.type)}"
        return f"{name:<24} rva=0x{self.rva:08x} size=0x{self.size:08x}"


class DirectoryRegistry:
    """The data directory table of an image."""

    def __init__(self, entries: list[DataDirectory] | None = None):
        if entries is None:
            entries = [
                DataDirectory(DataDirectoryType(i))
                for i in range(IMAGE_NUMBEROF_DIRECTORY_ENTRIES)
            ]
        self._entries = entries

    @classmethod
    def from_structs(cls, raw: list[ImageDataDirectory]) -> "DirectoryRegistry":
        entries = []
        for index, dd in enumerate(raw):
            kind = (
                DataDirectoryType(index)
                if index < IMAGE_NUMBEROF_DIRECTORY_ENTRIES
                else index
            )
            entries.append(DataDirectory(kind, dd.VirtualAddress, dd.Size))
        return cls(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[DataDirectory]:
        return iter(self._entries)

    def as_tuple(self) -> tuple[DataDirectory, ...]:
        return tuple(self._entries)

    def has(self, kind: DataDirectoryType | int) -> bool:
        return int(kind) < len(self._entries)

    def get(self, kind: DataDirectoryType | int) -> DataDirectory:
        """Return the entry for kind.

        Raises:
            NotFoundError: If the table has fewer entries than kind requires
        """
        index = int(kind)
        if index < 0 or index >= len(self._entries):
            raise NotFoundError(
                f"Data directory {index} not present: table has "
                f"{len(self._entries)} entries"
            )
        return self._entries[index]

    def is_present(self, kind: DataDirectoryType | int) -> bool:
        return self.has(kind) and self.get(kind).is_present

    def to_bytes(self) -> bytes:
        return b"".join(entry.to_struct().to_bytes() for entry in self._entries)
