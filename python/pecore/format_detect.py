"""
Binary format detection utilities.

Cheap checks that tell whether a file or buffer looks like a PE image
before handing it to the full parser.
"""

from pathlib import Path

from .types import DOS_HEADER_SIZE, PE_SIGNATURE, PE_SIGNATURE_OFFSET_LOCATION

# Magic bytes for format detection
ELF_MAGIC = b"\x7fELF"
MACHO_MAGICS = (
    b"\xfe\xed\xfa\xce",
    b"\xfe\xed\xfa\xcf",
    b"\xce\xfa\xed\xfe",
    b"\xcf\xfa\xed\xfe",
)
DOS_MAGIC = b"MZ"

# e_lfanew values above this are treated as garbage
MAX_PE_HEADER_OFFSET = 0x100000


class UnsupportedBinaryFormat(ValueError):
    """Raised when data is not a PE image."""

    pass


def detect_format(data: bytes, origin: str = "<buffer>") -> str:
    """Detect the container format of a binary held in memory.

    Args:
        data: Leading bytes of the binary (the whole file for PE detection,
              since the PE signature may sit anywhere in the first 1MB)
        origin: Name used in error messages

    Returns:
        "pe" for PE images, "elf" or "macho" for formats this package
        recognizes but does not handle

    Raises:
        UnsupportedBinaryFormat: If the format is not recognized
    """
    if len(data) < 4:
        raise UnsupportedBinaryFormat(f"File too small to be a valid binary: {origin}")

    if data[:4] == ELF_MAGIC:
        return "elf"
    if data[:4] in MACHO_MAGICS:
        return "macho"

    # DOS header with PE signature
    if data[:2] == DOS_MAGIC and len(data) >= DOS_HEADER_SIZE:
        loc = PE_SIGNATURE_OFFSET_LOCATION
        pe_offset = int.from_bytes(data[loc : loc + 4], "little")
        if pe_offset < DOS_HEADER_SIZE or pe_offset > MAX_PE_HEADER_OFFSET:
            raise UnsupportedBinaryFormat(f"Invalid PE header offset {pe_offset:#x}: {origin}")
        if data[pe_offset : pe_offset + 4] == PE_SIGNATURE:
            return "pe"

    raise UnsupportedBinaryFormat(f"Binary is not a PE image: {origin}")


def detect_binary_format(path: Path) -> str:
    """Detect the container format of a binary file.

    Raises:
        UnsupportedBinaryFormat: If the format is not recognized
        FileNotFoundError: If the file doesn't exist
    """
    with open(path, "rb") as f:
        header = f.read(DOS_HEADER_SIZE)
        if header[:2] == DOS_MAGIC and len(header) == DOS_HEADER_SIZE:
            loc = PE_SIGNATURE_OFFSET_LOCATION
            pe_offset = int.from_bytes(header[loc : loc + 4], "little")
            if DOS_HEADER_SIZE <= pe_offset <= MAX_PE_HEADER_OFFSET:
                header += f.read(pe_offset + 4 - DOS_HEADER_SIZE)
    return detect_format(header, str(path))


def is_pe_binary(path: Path) -> bool:
    """Check if a binary is a PE image.

    Args:
        path: Path to binary file

    Returns:
        True if PE, False otherwise
    """
    try:
        return detect_binary_format(path) == "pe"
    except (UnsupportedBinaryFormat, FileNotFoundError):
        return False
