"""
pecore: PE (Windows Portable Executable) object model and builder.

Parse an executable into a mutable model, query and edit it, and write a
loadable image back:

    import pecore

    binary = pecore.parse(Path("foo.dll"))
    entry = binary.add_import_function("KERNEL32.DLL", "Sleep")
    binary.add_section(pecore.Section(name=".extra", content=b"payload"))
    binary.write(Path("foo_patched.dll"))

Failures raise subclasses of pecore.PEError (see pecore.errors).
"""

from pathlib import Path

from .abstract import AbstractBinary
from .binary import Binary
from .builder import BuildConfig, Builder
from .debug import CodeViewPDB, Debug
from .directories import DataDirectory, DataDirectoryType
from .errors import (
    AddressError,
    BelowImageBaseError,
    BuildError,
    InconsistentLayoutError,
    InvalidStateError,
    NoFileBackingError,
    NotFoundError,
    ParseError,
    PEError,
    StaleHandleError,
    UnmappedAddressError,
)
from .exports import Export, ExportEntry
from .format_detect import UnsupportedBinaryFormat, detect_binary_format, is_pe_binary
from .imports import Import, ImportEntry
from .parser import Parser
from .relocations import Relocation, RelocationEntry
from .resources import ResourceNode
from .section import Section, SectionHandle, SectionType
from .signature import Certificate, Signature
from .symbols import Symbol
from .tls import TLS
from .types import PEType


def parse(source: Path | str | bytes | bytearray, name: str = "") -> Binary:
    """Parse a PE image from a path or from bytes.

    Raises:
        ParseError: If the image headers are unusable
        OSError: If the path cannot be read
    """
    if isinstance(source, (bytes, bytearray)):
        return Parser.parse(source, name)
    path = Path(source)
    return Parser.parse(path.read_bytes(), name or path.name)


__all__ = [
    "parse",
    # Model
    "AbstractBinary",
    "Binary",
    "PEType",
    "Section",
    "SectionHandle",
    "SectionType",
    "DataDirectory",
    "DataDirectoryType",
    "Import",
    "ImportEntry",
    "Export",
    "ExportEntry",
    "Relocation",
    "RelocationEntry",
    "TLS",
    "Debug",
    "CodeViewPDB",
    "Signature",
    "Certificate",
    "Symbol",
    "ResourceNode",
    # Parsing and building
    "Parser",
    "Builder",
    "BuildConfig",
    # Format detection
    "detect_binary_format",
    "is_pe_binary",
    "UnsupportedBinaryFormat",
    # Errors
    "PEError",
    "ParseError",
    "AddressError",
    "UnmappedAddressError",
    "NoFileBackingError",
    "BelowImageBaseError",
    "NotFoundError",
    "InvalidStateError",
    "StaleHandleError",
    "BuildError",
    "InconsistentLayoutError",
]
