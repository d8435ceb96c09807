"""
PE/COFF structure definitions for PE32 and PE32+ images.

Each on-disk structure is a dataclass whose fields carry the names used by
the Microsoft PE/COFF specification, in on-disk order, together with a
little-endian struct format. The PackedStruct base turns that pair into
from_bytes / to_bytes / write_to, with a bounds check before every read.

We use dataclasses instead of NamedTuples for mutability - editing a binary
often needs to modify header fields.

References:
- Microsoft PE/COFF Specification
- https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
"""

import enum
import struct
from dataclasses import dataclass, fields
from typing import ClassVar

from .errors import ParseError

# =============================================================================
# Constants
# =============================================================================

# Alignment constants (typical values)
PAGE_SIZE = 0x1000  # 4KB pages, granularity of base relocation blocks
FILE_ALIGNMENT_DEFAULT = 0x200  # 512 bytes (typical for PE)
SECTION_ALIGNMENT_DEFAULT = 0x1000  # 4KB (typical for PE)

# DOS Header
DOS_MAGIC = 0x5A4D  # "MZ" in little-endian

# PE Signature
PE_SIGNATURE = b"PE\x00\x00"
PE_SIGNATURE_OFFSET_LOCATION = 0x3C  # Offset in DOS header where e_lfanew lives

# Machine types
IMAGE_FILE_MACHINE_UNKNOWN = 0x0
IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_ARM = 0x1C0
IMAGE_FILE_MACHINE_ARMNT = 0x1C4
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_ARM64 = 0xAA64

# Optional header magic
IMAGE_NT_OPTIONAL_HDR32_MAGIC = 0x10B
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20B  # PE32+

# Section characteristics
IMAGE_SCN_TYPE_NO_PAD = 0x00000008
IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x00000080
IMAGE_SCN_LNK_INFO = 0x00000200
IMAGE_SCN_LNK_REMOVE = 0x00000800
IMAGE_SCN_LNK_COMDAT = 0x00001000
IMAGE_SCN_GPREL = 0x00008000
IMAGE_SCN_LNK_NRELOC_OVFL = 0x01000000
IMAGE_SCN_MEM_DISCARDABLE = 0x02000000
IMAGE_SCN_MEM_NOT_CACHED = 0x04000000
IMAGE_SCN_MEM_NOT_PAGED = 0x08000000
IMAGE_SCN_MEM_SHARED = 0x10000000
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

# File characteristics
IMAGE_FILE_RELOCS_STRIPPED = 0x0001
IMAGE_FILE_EXECUTABLE_IMAGE = 0x0002
IMAGE_FILE_LINE_NUMS_STRIPPED = 0x0004
IMAGE_FILE_LOCAL_SYMS_STRIPPED = 0x0008
IMAGE_FILE_LARGE_ADDRESS_AWARE = 0x0020
IMAGE_FILE_32BIT_MACHINE = 0x0100
IMAGE_FILE_DEBUG_STRIPPED = 0x0200
IMAGE_FILE_SYSTEM = 0x1000
IMAGE_FILE_DLL = 0x2000

# DLL characteristics
IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA = 0x0020
IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE = 0x0040  # ASLR
IMAGE_DLLCHARACTERISTICS_FORCE_INTEGRITY = 0x0080
IMAGE_DLLCHARACTERISTICS_NX_COMPAT = 0x0100
IMAGE_DLLCHARACTERISTICS_NO_SEH = 0x0400
IMAGE_DLLCHARACTERISTICS_GUARD_CF = 0x4000
IMAGE_DLLCHARACTERISTICS_TERMINAL_SERVER_AWARE = 0x8000

# Subsystems
IMAGE_SUBSYSTEM_WINDOWS_GUI = 2
IMAGE_SUBSYSTEM_WINDOWS_CUI = 3

# Data directory indices
IMAGE_DIRECTORY_ENTRY_EXPORT = 0
IMAGE_DIRECTORY_ENTRY_IMPORT = 1
IMAGE_DIRECTORY_ENTRY_RESOURCE = 2
IMAGE_DIRECTORY_ENTRY_EXCEPTION = 3
IMAGE_DIRECTORY_ENTRY_SECURITY = 4
IMAGE_DIRECTORY_ENTRY_BASERELOC = 5
IMAGE_DIRECTORY_ENTRY_DEBUG = 6
IMAGE_DIRECTORY_ENTRY_ARCHITECTURE = 7
IMAGE_DIRECTORY_ENTRY_GLOBALPTR = 8
IMAGE_DIRECTORY_ENTRY_TLS = 9
IMAGE_DIRECTORY_ENTRY_LOAD_CONFIG = 10
IMAGE_DIRECTORY_ENTRY_BOUND_IMPORT = 11
IMAGE_DIRECTORY_ENTRY_IAT = 12
IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT = 13
IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = 14
IMAGE_NUMBEROF_DIRECTORY_ENTRIES = 16

# Base relocation types
IMAGE_REL_BASED_ABSOLUTE = 0  # Padding, skip
IMAGE_REL_BASED_HIGH = 1
IMAGE_REL_BASED_LOW = 2
IMAGE_REL_BASED_HIGHLOW = 3  # 32-bit pointer
IMAGE_REL_BASED_HIGHADJ = 4
IMAGE_REL_BASED_DIR64 = 10  # 64-bit pointer

# Import lookup table ordinal flags
IMAGE_ORDINAL_FLAG32 = 0x80000000
IMAGE_ORDINAL_FLAG64 = 0x8000000000000000

# Debug types
IMAGE_DEBUG_TYPE_UNKNOWN = 0
IMAGE_DEBUG_TYPE_COFF = 1
IMAGE_DEBUG_TYPE_CODEVIEW = 2
IMAGE_DEBUG_TYPE_MISC = 4
IMAGE_DEBUG_TYPE_REPRO = 16

# CodeView signatures
CODEVIEW_RSDS = b"RSDS"
CODEVIEW_NB10 = b"NB10"

# WIN_CERTIFICATE
WIN_CERT_REVISION_2_0 = 0x0200
WIN_CERT_TYPE_PKCS_SIGNED_DATA = 0x0002

# Structure sizes
DOS_HEADER_SIZE = 64
COFF_HEADER_SIZE = 20
OPTIONAL_HEADER32_SIZE = 96  # Fixed part, before data directories
OPTIONAL_HEADER64_SIZE = 112  # Fixed part, before data directories
DATA_DIRECTORY_SIZE = 8
SECTION_HEADER_SIZE = 40
IMPORT_DESCRIPTOR_SIZE = 20
DEBUG_DIRECTORY_SIZE = 28
COFF_SYMBOL_SIZE = 18

# Standard DOS stub program that prints "This program cannot be run in DOS
# mode." followed by the usual padding up to e_lfanew = 0x80.
DEFAULT_DOS_STUB = (
    b"\x0e\x1f\xba\x0e\x00\xb4\x09\xcd\x21\xb8\x01\x4c\xcd\x21"
    b"This program cannot be run in DOS mode.\r\r\n$"
    + b"\x00" * 7
)


# =============================================================================
# PE/COFF Structures
# =============================================================================


class PackedStruct:
    """Mixin giving a dataclass binary (de)serialization.

    Subclasses declare STRUCT_FMT, SIZE and DESCRIPTION; the dataclass field
    order must match the struct format.
    """

    STRUCT_FMT: ClassVar[str]
    SIZE: ClassVar[int]
    DESCRIPTION: ClassVar[str] = "structure"

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0):
        """Parse the structure from binary data."""
        if offset < 0 or len(data) < offset + cls.SIZE:
            raise ParseError(
                f"Data too short for {cls.DESCRIPTION}: "
                f"{len(data)} < {offset + cls.SIZE}"
            )
        return cls(*struct.unpack_from(cls.STRUCT_FMT, data, offset))

    def values(self) -> tuple:
        """Field values in on-disk order."""
        return tuple(getattr(self, f.name) for f in fields(self))

    def to_bytes(self) -> bytes:
        """Serialize the structure to binary data."""
        return struct.pack(self.STRUCT_FMT, *self.values())

    def write_to(self, data: bytearray, offset: int = 0) -> None:
        """Write the structure to a mutable buffer at offset."""
        struct.pack_into(self.STRUCT_FMT, data, offset, *self.values())


@dataclass
class DosHeader(PackedStruct):
    """DOS MZ header (IMAGE_DOS_HEADER).

    The DOS header is 64 bytes and exists for backwards compatibility.
    The only field we really care about is e_lfanew which points to the PE signature.
    """

    e_magic: int  # "MZ" = 0x5A4D
    e_cblp: int
    e_cp: int
    e_crlc: int
    e_cparhdr: int
    e_minalloc: int
    e_maxalloc: int
    e_ss: int
    e_sp: int
    e_csum: int
    e_ip: int
    e_cs: int
    e_lfarlc: int
    e_ovno: int
    e_res: bytes  # 8 bytes reserved
    e_oemid: int
    e_oeminfo: int
    e_res2: bytes  # 20 bytes reserved
    e_lfanew: int  # Offset to PE signature

    STRUCT_FMT: ClassVar[str] = "<HHHHHHHHHHHHHH8sHH20sI"
    SIZE: ClassVar[int] = 64
    DESCRIPTION: ClassVar[str] = "DOS header"

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0) -> "DosHeader":
        header = super().from_bytes(data, offset)
        if header.e_magic != DOS_MAGIC:
            raise ParseError(f"Not a DOS/PE file (bad magic: 0x{header.e_magic:04X})")
        return header

    @classmethod
    def default(cls, e_lfanew: int = DOS_HEADER_SIZE + len(DEFAULT_DOS_STUB)) -> "DosHeader":
        """DOS header as emitted by common linkers."""
        return cls(
            e_magic=DOS_MAGIC,
            e_cblp=0x90,
            e_cp=3,
            e_crlc=0,
            e_cparhdr=4,
            e_minalloc=0,
            e_maxalloc=0xFFFF,
            e_ss=0,
            e_sp=0xB8,
            e_csum=0,
            e_ip=0,
            e_cs=0,
            e_lfarlc=0x40,
            e_ovno=0,
            e_res=b"\x00" * 8,
            e_oemid=0,
            e_oeminfo=0,
            e_res2=b"\x00" * 20,
            e_lfanew=e_lfanew,
        )


@dataclass
class CoffHeader(PackedStruct):
    """COFF file header (IMAGE_FILE_HEADER).

    This 20-byte header comes right after the PE signature.
    """

    Machine: int  # Target machine type (e.g., AMD64)
    NumberOfSections: int
    TimeDateStamp: int
    PointerToSymbolTable: int  # File offset, usually 0 for MSVC executables
    NumberOfSymbols: int
    SizeOfOptionalHeader: int
    Characteristics: int  # File characteristics flags

    STRUCT_FMT: ClassVar[str] = "<HHIIIHH"
    SIZE: ClassVar[int] = 20
    DESCRIPTION: ClassVar[str] = "COFF header"

    @property
    def is_dll(self) -> bool:
        """Check if this is a DLL."""
        return bool(self.Characteristics & IMAGE_FILE_DLL)

    @property
    def is_executable(self) -> bool:
        """Check if this is an executable image."""
        return bool(self.Characteristics & IMAGE_FILE_EXECUTABLE_IMAGE)


@dataclass
class ImageDataDirectory(PackedStruct):
    """Data directory entry (IMAGE_DATA_DIRECTORY)."""

    VirtualAddress: int  # RVA of the data (file offset for the certificate table)
    Size: int

    STRUCT_FMT: ClassVar[str] = "<II"
    SIZE: ClassVar[int] = 8
    DESCRIPTION: ClassVar[str] = "data directory"


class _OptionalHeaderMixin:
    """Behaviour shared by the PE32 and PE32+ optional headers."""

    MAGIC: ClassVar[int]
    THUNK_SIZE: ClassVar[int]
    ORDINAL_FLAG: ClassVar[int]

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0):
        header = super().from_bytes(data, offset)
        if header.Magic != cls.MAGIC:
            raise ParseError(
                f"Unexpected optional header magic 0x{header.Magic:04X}, "
                f"expected 0x{cls.MAGIC:04X}"
            )
        return header

    @property
    def is_pe32_plus(self) -> bool:
        return self.Magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC

    @property
    def has_aslr(self) -> bool:
        """Check if ASLR (dynamic base) is enabled."""
        return bool(self.DllCharacteristics & IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE)


@dataclass
class OptionalHeader32(_OptionalHeaderMixin, PackedStruct):
    """PE32 optional header (IMAGE_OPTIONAL_HEADER32).

    Differs from PE32+ by the extra BaseOfData field and 32-bit ImageBase and
    stack/heap sizes. Data directories are stored separately.
    """

    Magic: int  # 0x10B
    MajorLinkerVersion: int
    MinorLinkerVersion: int
    SizeOfCode: int
    SizeOfInitializedData: int
    SizeOfUninitializedData: int
    AddressOfEntryPoint: int
    BaseOfCode: int
    BaseOfData: int
    ImageBase: int
    SectionAlignment: int
    FileAlignment: int
    MajorOperatingSystemVersion: int
    MinorOperatingSystemVersion: int
    MajorImageVersion: int
    MinorImageVersion: int
    MajorSubsystemVersion: int
    MinorSubsystemVersion: int
    Win32VersionValue: int
    SizeOfImage: int
    SizeOfHeaders: int
    CheckSum: int
    Subsystem: int
    DllCharacteristics: int
    SizeOfStackReserve: int
    SizeOfStackCommit: int
    SizeOfHeapReserve: int
    SizeOfHeapCommit: int
    LoaderFlags: int
    NumberOfRvaAndSizes: int

    # 2 + 1 + 1 + 4*9 + 2*6 + 4*4 + 2*2 + 4*4 + 4*2 = 96 bytes
    STRUCT_FMT: ClassVar[str] = "<HBBIIIIIIIII" "HHHHHH" "IIIIHH" "IIII" "II"
    SIZE: ClassVar[int] = OPTIONAL_HEADER32_SIZE
    DESCRIPTION: ClassVar[str] = "optional header"
    MAGIC: ClassVar[int] = IMAGE_NT_OPTIONAL_HDR32_MAGIC
    THUNK_SIZE: ClassVar[int] = 4
    ORDINAL_FLAG: ClassVar[int] = IMAGE_ORDINAL_FLAG32


@dataclass
class OptionalHeader64(_OptionalHeaderMixin, PackedStruct):
    """PE32+ optional header (IMAGE_OPTIONAL_HEADER64).

    This header is required for executable images despite its name.
    The "optional" refers to object files which don't have it.

    Note: Data directories are stored separately.
    """

    Magic: int  # 0x20B for PE32+
    MajorLinkerVersion: int
    MinorLinkerVersion: int
    SizeOfCode: int
    SizeOfInitializedData: int
    SizeOfUninitializedData: int
    AddressOfEntryPoint: int
    BaseOfCode: int
    ImageBase: int  # 8 bytes for PE32+
    SectionAlignment: int
    FileAlignment: int
    MajorOperatingSystemVersion: int
    MinorOperatingSystemVersion: int
    MajorImageVersion: int
    MinorImageVersion: int
    MajorSubsystemVersion: int
    MinorSubsystemVersion: int
    Win32VersionValue: int
    SizeOfImage: int
    SizeOfHeaders: int
    CheckSum: int
    Subsystem: int
    DllCharacteristics: int
    SizeOfStackReserve: int  # 8 bytes for PE32+
    SizeOfStackCommit: int  # 8 bytes for PE32+
    SizeOfHeapReserve: int  # 8 bytes for PE32+
    SizeOfHeapCommit: int  # 8 bytes for PE32+
    LoaderFlags: int
    NumberOfRvaAndSizes: int

    # 2 + 1 + 1 + 4*6 + 8 + 4*9 + 2*2 + 8*4 + 4*2 = 112 bytes
    STRUCT_FMT: ClassVar[str] = "<HBBIIIIIQIIHHHHHH" "IIIIHHQQQQII"
    SIZE: ClassVar[int] = OPTIONAL_HEADER64_SIZE
    DESCRIPTION: ClassVar[str] = "optional header"
    MAGIC: ClassVar[int] = IMAGE_NT_OPTIONAL_HDR64_MAGIC
    THUNK_SIZE: ClassVar[int] = 8
    ORDINAL_FLAG: ClassVar[int] = IMAGE_ORDINAL_FLAG64


OptionalHeader = OptionalHeader32 | OptionalHeader64

# Offset of the CheckSum field inside either optional header variant
OPTIONAL_HEADER_CHECKSUM_OFFSET = 64


def parse_optional_header(data: bytes | bytearray, offset: int) -> OptionalHeader:
    """Parse a PE32 or PE32+ optional header, selected by its magic."""
    if len(data) < offset + 2:
        raise ParseError(
            f"Data too short for optional header: {len(data)} < {offset + 2}"
        )
    (magic,) = struct.unpack_from("<H", data, offset)
    if magic == IMAGE_NT_OPTIONAL_HDR32_MAGIC:
        return OptionalHeader32.from_bytes(data, offset)
    if magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC:
        return OptionalHeader64.from_bytes(data, offset)
    raise ParseError(f"Unknown optional header magic: 0x{magic:04X}")


@dataclass
class SectionHeader(PackedStruct):
    """PE/COFF section header (IMAGE_SECTION_HEADER).

    Each section header is 40 bytes.
    """

    Name: bytes  # 8 bytes, null-padded (NOT null-terminated if 8 chars)
    VirtualSize: int  # Size in memory (can be > SizeOfRawData)
    VirtualAddress: int  # RVA of section
    SizeOfRawData: int  # Size in file (rounded to FileAlignment)
    PointerToRawData: int  # File offset
    PointerToRelocations: int  # Usually 0 for executables
    PointerToLinenumbers: int  # Deprecated, usually 0
    NumberOfRelocations: int
    NumberOfLinenumbers: int
    Characteristics: int  # Section flags

    STRUCT_FMT: ClassVar[str] = "<8sIIIIIIHHI"
    SIZE: ClassVar[int] = 40
    DESCRIPTION: ClassVar[str] = "section header"

    @property
    def name_str(self) -> str:
        """Get section name as string (strips null padding)."""
        return decode_section_name(self.Name)


@dataclass
class BaseRelocationBlock(PackedStruct):
    """Base relocation block header.

    The base relocation table consists of blocks, each covering a 4KB page.
    Each block has this header followed by TypeOffset entries.
    """

    PageRVA: int  # Base RVA for this block (page-aligned)
    BlockSize: int  # Size including header and all entries

    STRUCT_FMT: ClassVar[str] = "<II"
    SIZE: ClassVar[int] = 8
    DESCRIPTION: ClassVar[str] = "relocation block"

    @property
    def num_entries(self) -> int:
        """Number of TypeOffset entries in this block."""
        return (self.BlockSize - self.SIZE) // 2


@dataclass
class ImportDescriptor(PackedStruct):
    """Import directory entry (IMAGE_IMPORT_DESCRIPTOR)."""

    OriginalFirstThunk: int  # RVA of the import lookup table
    TimeDateStamp: int  # 0xFFFFFFFF when bound
    ForwarderChain: int
    Name: int  # RVA of the DLL name
    FirstThunk: int  # RVA of the import address table

    STRUCT_FMT: ClassVar[str] = "<IIIII"
    SIZE: ClassVar[int] = IMPORT_DESCRIPTOR_SIZE
    DESCRIPTION: ClassVar[str] = "import descriptor"

    @property
    def is_null(self) -> bool:
        """All-zero descriptor terminating the table."""
        return not any(self.values())


@dataclass
class ExportDirectory(PackedStruct):
    """Export directory table (IMAGE_EXPORT_DIRECTORY)."""

    Characteristics: int
    TimeDateStamp: int
    MajorVersion: int
    MinorVersion: int
    Name: int
    Base: int  # Ordinal base
    NumberOfFunctions: int
    NumberOfNames: int
    AddressOfFunctions: int
    AddressOfNames: int
    AddressOfNameOrdinals: int

    STRUCT_FMT: ClassVar[str] = "<IIHHIIIIIII"
    SIZE: ClassVar[int] = 40
    DESCRIPTION: ClassVar[str] = "export directory"


@dataclass
class TlsDirectory32(PackedStruct):
    """TLS directory for PE32 (IMAGE_TLS_DIRECTORY32). Addresses are VAs."""

    StartAddressOfRawData: int
    EndAddressOfRawData: int
    AddressOfIndex: int
    AddressOfCallBacks: int
    SizeOfZeroFill: int
    Characteristics: int

    STRUCT_FMT: ClassVar[str] = "<IIIIII"
    SIZE: ClassVar[int] = 24
    DESCRIPTION: ClassVar[str] = "TLS directory"


@dataclass
class TlsDirectory64(PackedStruct):
    """TLS directory for PE32+ (IMAGE_TLS_DIRECTORY64). Addresses are VAs."""

    StartAddressOfRawData: int
    EndAddressOfRawData: int
    AddressOfIndex: int
    AddressOfCallBacks: int
    SizeOfZeroFill: int
    Characteristics: int

    STRUCT_FMT: ClassVar[str] = "<QQQQII"
    SIZE: ClassVar[int] = 40
    DESCRIPTION: ClassVar[str] = "TLS directory"


@dataclass
class DebugDirectory(PackedStruct):
    """Debug directory entry (IMAGE_DEBUG_DIRECTORY)."""

    Characteristics: int
    TimeDateStamp: int
    MajorVersion: int
    MinorVersion: int
    Type: int
    SizeOfData: int
    AddressOfRawData: int  # RVA
    PointerToRawData: int  # File offset

    STRUCT_FMT: ClassVar[str] = "<IIHHIIII"
    SIZE: ClassVar[int] = DEBUG_DIRECTORY_SIZE
    DESCRIPTION: ClassVar[str] = "debug directory"


@dataclass
class ResourceDirectoryTable(PackedStruct):
    """Resource directory table header (IMAGE_RESOURCE_DIRECTORY)."""

    Characteristics: int
    TimeDateStamp: int
    MajorVersion: int
    MinorVersion: int
    NumberOfNamedEntries: int
    NumberOfIdEntries: int

    STRUCT_FMT: ClassVar[str] = "<IIHHHH"
    SIZE: ClassVar[int] = 16
    DESCRIPTION: ClassVar[str] = "resource directory"


@dataclass
class CoffSymbolRecord(PackedStruct):
    """COFF symbol table record (IMAGE_SYMBOL)."""

    Name: bytes  # Short name, or 4 zero bytes + string table offset
    Value: int
    SectionNumber: int  # Signed: 0 undefined, -1 absolute, -2 debug
    Type: int
    StorageClass: int
    NumberOfAuxSymbols: int

    STRUCT_FMT: ClassVar[str] = "<8sIhHBB"
    SIZE: ClassVar[int] = COFF_SYMBOL_SIZE
    DESCRIPTION: ClassVar[str] = "COFF symbol"


@dataclass
class WinCertificateHeader(PackedStruct):
    """WIN_CERTIFICATE header preceding each certificate blob."""

    Length: int  # Includes this 8-byte header
    Revision: int
    CertificateType: int

    STRUCT_FMT: ClassVar[str] = "<IHH"
    SIZE: ClassVar[int] = 8
    DESCRIPTION: ClassVar[str] = "certificate header"


# =============================================================================
# Helper Functions
# =============================================================================


def round_up_to_alignment(value: int, alignment: int) -> int:
    """Round value up to next alignment boundary."""
    if alignment == 0:
        return value
    return (value + alignment - 1) & ~(alignment - 1)


def round_down_to_alignment(value: int, alignment: int) -> int:
    """Round value down to previous alignment boundary."""
    if alignment == 0:
        return value
    return value & ~(alignment - 1)


def round_up_to_page(addr: int) -> int:
    """Round address up to next page boundary."""
    return round_up_to_alignment(addr, PAGE_SIZE)


def round_down_to_page(addr: int) -> int:
    """Round address down to previous page boundary."""
    return round_down_to_alignment(addr, PAGE_SIZE)


def is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


def section_name_to_bytes(name: str) -> bytes:
    """Convert section name string to 8-byte padded bytes.

    Section names are limited to 8 characters in PE/COFF.
    """
    encoded = name.encode("utf-8")
    if len(encoded) > 8:
        raise ValueError(f"Section name too long (max 8 bytes): {name}")
    return encoded.ljust(8, b"\x00")


def decode_section_name(raw: bytes) -> str:
    """Decode an 8-byte section name (may or may not be null-terminated)."""
    null_pos = raw.find(b"\x00")
    if null_pos >= 0:
        raw = raw[:null_pos]
    return raw.decode("utf-8", errors="replace")


# =============================================================================
# Header Model
# =============================================================================


class PEType(enum.Enum):
    """Optional header flavour."""

    PE32 = IMAGE_NT_OPTIONAL_HDR32_MAGIC
    PE32_PLUS = IMAGE_NT_OPTIONAL_HDR64_MAGIC


def _default_optional_header(pe_type: PEType) -> OptionalHeader:
    common = dict(
        MajorLinkerVersion=14,
        MinorLinkerVersion=0,
        SizeOfCode=0,
        SizeOfInitializedData=0,
        SizeOfUninitializedData=0,
        AddressOfEntryPoint=0,
        BaseOfCode=0,
        SectionAlignment=SECTION_ALIGNMENT_DEFAULT,
        FileAlignment=FILE_ALIGNMENT_DEFAULT,
        MajorOperatingSystemVersion=6,
        MinorOperatingSystemVersion=0,
        MajorImageVersion=0,
        MinorImageVersion=0,
        MajorSubsystemVersion=6,
        MinorSubsystemVersion=0,
        Win32VersionValue=0,
        SizeOfImage=SECTION_ALIGNMENT_DEFAULT,
        SizeOfHeaders=FILE_ALIGNMENT_DEFAULT,
        CheckSum=0,
        Subsystem=IMAGE_SUBSYSTEM_WINDOWS_CUI,
        SizeOfStackReserve=0x100000,
        SizeOfStackCommit=0x1000,
        SizeOfHeapReserve=0x100000,
        SizeOfHeapCommit=0x1000,
        LoaderFlags=0,
        NumberOfRvaAndSizes=IMAGE_NUMBEROF_DIRECTORY_ENTRIES,
    )
    dll_characteristics = (
        IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE
        | IMAGE_DLLCHARACTERISTICS_NX_COMPAT
        | IMAGE_DLLCHARACTERISTICS_TERMINAL_SERVER_AWARE
    )
    if pe_type is PEType.PE32_PLUS:
        return OptionalHeader64(
            Magic=IMAGE_NT_OPTIONAL_HDR64_MAGIC,
            ImageBase=0x140000000,
            DllCharacteristics=dll_characteristics
            | IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA,
            **common,
        )
    return OptionalHeader32(
        Magic=IMAGE_NT_OPTIONAL_HDR32_MAGIC,
        BaseOfData=0,
        ImageBase=0x400000,
        DllCharacteristics=dll_characteristics,
        **common,
    )


@dataclass
class HeaderModel:
    """Everything before the section table.

    Holds the DOS header and stub, the COFF header, the optional header and
    any bytes the optional header declares beyond its data directories.
    Data directories themselves live in the DirectoryRegistry.
    """

    dos_header: DosHeader
    dos_stub: bytes
    coff_header: CoffHeader
    optional_header: OptionalHeader
    optional_header_extra: bytes = b""

    @classmethod
    def default(cls, pe_type: PEType) -> "HeaderModel":
        """Headers for an empty image, as a linker would emit them."""
        optional_header = _default_optional_header(pe_type)
        if pe_type is PEType.PE32_PLUS:
            machine = IMAGE_FILE_MACHINE_AMD64
            characteristics = IMAGE_FILE_EXECUTABLE_IMAGE | IMAGE_FILE_LARGE_ADDRESS_AWARE
        else:
            machine = IMAGE_FILE_MACHINE_I386
            characteristics = IMAGE_FILE_EXECUTABLE_IMAGE | IMAGE_FILE_32BIT_MACHINE
        coff_header = CoffHeader(
            Machine=machine,
            NumberOfSections=0,
            TimeDateStamp=0,
            PointerToSymbolTable=0,
            NumberOfSymbols=0,
            SizeOfOptionalHeader=optional_header.SIZE
            + IMAGE_NUMBEROF_DIRECTORY_ENTRIES * DATA_DIRECTORY_SIZE,
            Characteristics=characteristics,
        )
        return cls(
            dos_header=DosHeader.default(),
            dos_stub=DEFAULT_DOS_STUB,
            coff_header=coff_header,
            optional_header=optional_header,
        )

    @property
    def pe_type(self) -> PEType:
        return PEType(self.optional_header.Magic)

    @property
    def pe_offset(self) -> int:
        return self.dos_header.e_lfanew

    @property
    def coff_header_offset(self) -> int:
        return self.pe_offset + len(PE_SIGNATURE)

    @property
    def optional_header_offset(self) -> int:
        return self.coff_header_offset + COFF_HEADER_SIZE

    @property
    def data_directories_offset(self) -> int:
        return self.optional_header_offset + self.optional_header.SIZE

    @property
    def section_table_offset(self) -> int:
        return self.optional_header_offset + self.coff_header.SizeOfOptionalHeader

    def section_table_end(self, number_of_sections: int) -> int:
        return self.section_table_offset + number_of_sections * SECTION_HEADER_SIZE

    def to_bytes(self, directories: bytes) -> bytes:
        """Serialize everything up to (not including) the section table.

        Written in file order so that a DOS header overlapping the PE headers
        (e_lfanew < 64) ends up with the PE header bytes on top.
        """
        out = bytearray(max(self.section_table_offset, DOS_HEADER_SIZE))
        self.dos_header.write_to(out, 0)
        out[DOS_HEADER_SIZE : DOS_HEADER_SIZE + len(self.dos_stub)] = self.dos_stub
        pe_offset = self.pe_offset
        out[pe_offset : pe_offset + len(PE_SIGNATURE)] = PE_SIGNATURE
        self.coff_header.write_to(out, self.coff_header_offset)
        self.optional_header.write_to(out, self.optional_header_offset)
        dir_offset = self.data_directories_offset
        out[dir_offset : dir_offset + len(directories)] = directories
        extra_offset = dir_offset + len(directories)
        out[extra_offset : extra_offset + len(self.optional_header_extra)] = (
            self.optional_header_extra
        )
        return bytes(out)
