"""
Debug directory entries and CodeView PDB records.

Only the CodeView record is interpreted; other debug payloads (COFF, MISC,
REPRO, ...) are located but kept opaque.
"""

import logging
import struct
import uuid
from dataclasses import dataclass

from .byteview import ByteView
from .errors import ParseError
from .types import (
    CODEVIEW_NB10,
    CODEVIEW_RSDS,
    DEBUG_DIRECTORY_SIZE,
    IMAGE_DEBUG_TYPE_CODEVIEW,
    DebugDirectory,
)

logger = logging.getLogger(__name__)


@dataclass
class CodeViewPDB:
    """PDB reference from a CodeView debug record."""

    cv_signature: str  # "RSDS" or "NB10"
    age: int
    filename: str
    guid: str | None = None  # RSDS
    signature: int | None = None  # NB10 timestamp signature

    def __str__(self) -> str:
        ident = self.guid if self.guid is not None else f"{self.signature:08x}"
        return f"{self.cv_signature} {ident} age={self.age} {self.filename}"


@dataclass
class Debug:
    """One IMAGE_DEBUG_DIRECTORY entry."""

    characteristics: int = 0
    timestamp: int = 0
    major_version: int = 0
    minor_version: int = 0
    type: int = 0
    size_of_data: int = 0
    address_of_raw_data: int = 0
    pointer_to_raw_data: int = 0
    code_view: CodeViewPDB | None = None

    @classmethod
    def from_struct(cls, raw: DebugDirectory) -> "Debug":
        return cls(
            characteristics=raw.Characteristics,
            timestamp=raw.TimeDateStamp,
            major_version=raw.MajorVersion,
            minor_version=raw.MinorVersion,
            type=raw.Type,
            size_of_data=raw.SizeOfData,
            address_of_raw_data=raw.AddressOfRawData,
            pointer_to_raw_data=raw.PointerToRawData,
        )

    def to_struct(self) -> DebugDirectory:
        return DebugDirectory(
            Characteristics=self.characteristics,
            TimeDateStamp=self.timestamp,
            MajorVersion=self.major_version,
            MinorVersion=self.minor_version,
            Type=self.type,
            SizeOfData=self.size_of_data,
            AddressOfRawData=self.address_of_raw_data,
            PointerToRawData=self.pointer_to_raw_data,
        )

    def __str__(self) -> str:
        text = (
            f"type={self.type} size=0x{self.size_of_data:x} "
            f"rva=0x{self.address_of_raw_data:x} ptr=0x{self.pointer_to_raw_data:x}"
        )
        if self.code_view is not None:
            text += f" {self.code_view}"
        return text


def parse_codeview(view: ByteView, offset: int, size: int) -> CodeViewPDB:
    """Decode an RSDS or NB10 record at a file offset."""
    record = view.read(offset, size, "CodeView record")
    magic = record[:4]
    if magic == CODEVIEW_RSDS:
        if len(record) < 24:
            raise ParseError(f"Data too short for RSDS record: {len(record)} < 24")
        guid = uuid.UUID(bytes_le=record[4:20])
        (age,) = struct.unpack_from("<I", record, 20)
        name = record[24:].split(b"\x00", 1)[0]
        return CodeViewPDB(
            cv_signature="RSDS",
            age=age,
            filename=name.decode("utf-8", "replace"),
            guid=str(guid),
        )
    if magic == CODEVIEW_NB10:
        if len(record) < 16:
            raise ParseError(f"Data too short for NB10 record: {len(record)} < 16")
        _, signature, age = struct.unpack_from("<III", record, 4)
        name = record[16:].split(b"\x00", 1)[0]
        return CodeViewPDB(
            cv_signature="NB10",
            age=age,
            filename=name.decode("utf-8", "replace"),
            signature=signature,
        )
    raise ParseError(f"Unknown CodeView signature {magic!r}")


def parse_debug(
    view: ByteView,
    offset: int,
    size: int,
    max_entries: int,
) -> list[Debug]:
    """Decode the debug directory array at a file offset."""
    count = size // DEBUG_DIRECTORY_SIZE
    if count > max_entries:
        raise ParseError(f"Debug directory has {count} entries, maximum is {max_entries}")
    entries = []
    for index in range(count):
        raw = DebugDirectory.from_bytes(view.data, offset + index * DEBUG_DIRECTORY_SIZE)
        entry = Debug.from_struct(raw)
        if entry.type == IMAGE_DEBUG_TYPE_CODEVIEW and entry.pointer_to_raw_data:
            try:
                entry.code_view = parse_codeview(
                    view, entry.pointer_to_raw_data, entry.size_of_data
                )
            except ParseError as e:
                logger.debug("Ignoring CodeView record of debug entry %d: %s", index, e)
        entries.append(entry)
    return entries


def debug_table_bytes(entries: list[Debug]) -> bytes:
    return b"".join(entry.to_struct().to_bytes() for entry in entries)
