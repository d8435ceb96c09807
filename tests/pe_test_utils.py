"""
Synthetic PE image construction for tests.

Real toolchain output is not needed to exercise the object model: the
helpers here assemble small but complete PE32 / PE32+ images byte by byte
with struct, independently of the code under test. Every image has the
same fixed layout, so tests can assert against the constants below.

Layout (RVAs; FileAlignment 0x200, SectionAlignment 0x1000):

    0x1000  .text   entry point, a pointer at +0x10
    0x2000  .rdata  import descriptors, ILT/IAT, hint/names, DLL names,
                    export directory, debug directory + RSDS record,
                    TLS directory + callback array, resource root
    0x3000  .data   two pointers, TLS index and TLS template
    0x4000  .reloc  two relocation blocks (optional)

After the last section's raw data come, in order: the COFF symbol table
(optional), the caller's overlay bytes, and a certificate table (optional,
8-byte aligned).

Usage:
    from pe_test_utils import make_pe, K32_IAT_RVA

    image = make_pe(pe32_plus=True, overlay=b"trailing")
    binary = pecore.parse(image.data)
"""

import struct
import uuid
from dataclasses import dataclass, field

from pecore.checksum import compute_checksum

FILE_ALIGNMENT = 0x200
SECTION_ALIGNMENT = 0x1000
PE_OFFSET = 0x80

IMAGE_BASE_64 = 0x140000000
IMAGE_BASE_32 = 0x400000

TEXT_RVA = 0x1000
RDATA_RVA = 0x2000
DATA_RVA = 0x3000
RELOC_RVA = 0x4000

TEXT_RAW_SIZE = 0x200
RDATA_RAW_SIZE = 0x400
DATA_RAW_SIZE = 0x200
RELOC_RAW_SIZE = 0x200

# .rdata contents (RVAs)
IMPORT_DIR_RVA = 0x2000
IMPORT_DIR_SIZE = 3 * 20
K32_ILT_RVA = 0x2040
U32_ILT_RVA = 0x2060
K32_IAT_RVA = 0x2080
U32_IAT_RVA = 0x20A0
IAT_DIR_SIZE = 0x40
HINT_GETPROCADDRESS_RVA = 0x20C0
HINT_LOADLIBRARYA_RVA = 0x20E0
HINT_MESSAGEBOXA_RVA = 0x2100
K32_NAME_RVA = 0x2120
U32_NAME_RVA = 0x2130
EXPORT_DIR_RVA = 0x2140
EXPORT_DIR_SIZE = 0x80
EXPORT_FUNCTIONS_RVA = 0x2170
EXPORT_NAMES_RVA = 0x2180
EXPORT_ORDINALS_RVA = 0x2188
EXPORT_NAME1_RVA = 0x2190
EXPORT_NAME2_RVA = 0x21A0
EXPORT_FORWARD_RVA = 0x21B0
EXPORT_DLL_NAME_RVA = 0x21C0
DEBUG_DIR_RVA = 0x21D0
CODEVIEW_RVA = 0x21F0
TLS_DIR_RVA = 0x2220
TLS_CALLBACKS_RVA = 0x2250
RESOURCE_DIR_RVA = 0x2280
RESOURCE_DIR_SIZE = 24
RDATA_VIRTUAL_SIZE = 0x300

# .data contents (RVAs)
TLS_INDEX_RVA = 0x3020
TLS_TEMPLATE_RVA = 0x3040
TLS_TEMPLATE = b"TLSDATA\x00"

ORDINAL_IMPORT = 42
PDB_GUID = uuid.UUID("12345678-1234-5678-9abc-def012345678")
PDB_AGE = 3
PDB_NAME = "synth.pdb"
EXPORT_DLL_NAME = "synth.dll"
FORWARDER = "KERNEL32.Sleep"
LONG_SYMBOL_NAME = "a_very_long_symbol_name"

SCN_TEXT = 0x60000020
SCN_RDATA = 0x40000040
SCN_DATA = 0xC0000040
SCN_RELOC = 0x42000040

DOS_STUB = b"\x0e\x1f\xba\x0e\x00\xb4\x09\xcd\x21\xb8\x01\x4c\xcd\x21" + (
    b"This program cannot be run in DOS mode.\r\r\n$"
).ljust(50, b"\x00")


@dataclass
class SyntheticPE:
    """A generated image and the facts tests need about it."""

    data: bytes
    pe32_plus: bool
    image_base: int
    # name -> (virtual address, raw offset, raw size)
    sections: dict[str, tuple[int, int, int]] = field(default_factory=dict)
    overlay_offset: int = 0
    symbol_table_offset: int = 0
    certificate_offset: int = 0
    certificate_size: int = 0

    @property
    def thunk_size(self) -> int:
        return 8 if self.pe32_plus else 4

    @property
    def ordinal_flag(self) -> int:
        return 1 << 63 if self.pe32_plus else 1 << 31

    @property
    def callbacks(self) -> list[int]:
        return [self.image_base + TEXT_RVA, self.image_base + TEXT_RVA + 0x20]


def _put_cstring(buf: bytearray, offset: int, text: str) -> None:
    raw = text.encode("ascii") + b"\x00"
    buf[offset : offset + len(raw)] = raw


def _hint_name(buf: bytearray, offset: int, hint: int, name: str) -> None:
    struct.pack_into("<H", buf, offset, hint)
    _put_cstring(buf, offset + 2, name)


def _build_rdata(pe32_plus: bool, image_base: int, rdata_raw: int) -> bytearray:
    thunk_fmt = "<Q" if pe32_plus else "<I"
    thunk_size = 8 if pe32_plus else 4
    ordinal_flag = 1 << 63 if pe32_plus else 1 << 31
    rdata = bytearray(RDATA_RAW_SIZE)

    def at(rva: int) -> int:
        return rva - RDATA_RVA

    # Import descriptors: KERNEL32.dll, USER32.dll, null
    struct.pack_into("<IIIII", rdata, 0, K32_ILT_RVA, 0, 0, K32_NAME_RVA, K32_IAT_RVA)
    struct.pack_into("<IIIII", rdata, 20, U32_ILT_RVA, 0, 0, U32_NAME_RVA, U32_IAT_RVA)

    k32_thunks = [HINT_GETPROCADDRESS_RVA, HINT_LOADLIBRARYA_RVA, 0]
    u32_thunks = [HINT_MESSAGEBOXA_RVA, ordinal_flag | ORDINAL_IMPORT, 0]
    for index, value in enumerate(k32_thunks):
        struct.pack_into(thunk_fmt, rdata, at(K32_ILT_RVA) + index * thunk_size, value)
        struct.pack_into(thunk_fmt, rdata, at(K32_IAT_RVA) + index * thunk_size, value)
    for index, value in enumerate(u32_thunks):
        struct.pack_into(thunk_fmt, rdata, at(U32_ILT_RVA) + index * thunk_size, value)
        struct.pack_into(thunk_fmt, rdata, at(U32_IAT_RVA) + index * thunk_size, value)

    _hint_name(rdata, at(HINT_GETPROCADDRESS_RVA), 0x10, "GetProcAddress")
    _hint_name(rdata, at(HINT_LOADLIBRARYA_RVA), 0x20, "LoadLibraryA")
    _hint_name(rdata, at(HINT_MESSAGEBOXA_RVA), 0x05, "MessageBoxA")
    _put_cstring(rdata, at(K32_NAME_RVA), "KERNEL32.dll")
    _put_cstring(rdata, at(U32_NAME_RVA), "USER32.dll")

    # Export directory: 3 functions, 2 named, one forwarded
    struct.pack_into(
        "<IIHHIIIIIII",
        rdata,
        at(EXPORT_DIR_RVA),
        0,  # Characteristics
        0x5F000000,  # TimeDateStamp
        1,  # MajorVersion
        2,  # MinorVersion
        EXPORT_DLL_NAME_RVA,
        1,  # Base
        3,  # NumberOfFunctions
        2,  # NumberOfNames
        EXPORT_FUNCTIONS_RVA,
        EXPORT_NAMES_RVA,
        EXPORT_ORDINALS_RVA,
    )
    struct.pack_into(
        "<III", rdata, at(EXPORT_FUNCTIONS_RVA), TEXT_RVA, EXPORT_FORWARD_RVA, TEXT_RVA + 0x10
    )
    struct.pack_into("<II", rdata, at(EXPORT_NAMES_RVA), EXPORT_NAME1_RVA, EXPORT_NAME2_RVA)
    struct.pack_into("<HH", rdata, at(EXPORT_ORDINALS_RVA), 0, 1)
    _put_cstring(rdata, at(EXPORT_NAME1_RVA), "exported_one")
    _put_cstring(rdata, at(EXPORT_NAME2_RVA), "forwarded")
    _put_cstring(rdata, at(EXPORT_FORWARD_RVA), FORWARDER)
    _put_cstring(rdata, at(EXPORT_DLL_NAME_RVA), EXPORT_DLL_NAME)

    # Debug directory with one CodeView RSDS entry
    codeview = b"RSDS" + PDB_GUID.bytes_le + struct.pack("<I", PDB_AGE)
    codeview += PDB_NAME.encode("ascii") + b"\x00"
    struct.pack_into(
        "<IIHHIIII",
        rdata,
        at(DEBUG_DIR_RVA),
        0,  # Characteristics
        0x5F000000,  # TimeDateStamp
        0,
        0,
        2,  # IMAGE_DEBUG_TYPE_CODEVIEW
        len(codeview),
        CODEVIEW_RVA,
        rdata_raw + at(CODEVIEW_RVA),
    )
    rdata[at(CODEVIEW_RVA) : at(CODEVIEW_RVA) + len(codeview)] = codeview

    # TLS directory and callback array
    tls_values = (
        image_base + TLS_TEMPLATE_RVA,
        image_base + TLS_TEMPLATE_RVA + len(TLS_TEMPLATE),
        image_base + TLS_INDEX_RVA,
        image_base + TLS_CALLBACKS_RVA,
        0,
        0,
    )
    tls_fmt = "<QQQQII" if pe32_plus else "<IIIIII"
    struct.pack_into(tls_fmt, rdata, at(TLS_DIR_RVA), *tls_values)
    callbacks = [image_base + TEXT_RVA, image_base + TEXT_RVA + 0x20, 0]
    for index, value in enumerate(callbacks):
        struct.pack_into(thunk_fmt, rdata, at(TLS_CALLBACKS_RVA) + index * thunk_size, value)

    # Resource root with a single RT_ICON subdirectory entry
    struct.pack_into("<IIHHHH", rdata, at(RESOURCE_DIR_RVA), 0, 0, 4, 0, 0, 1)
    struct.pack_into("<II", rdata, at(RESOURCE_DIR_RVA) + 16, 3, 0x80000018)
    return rdata


def relocation_blocks(pe32_plus: bool) -> bytes:
    """The relocation table written into .reloc."""
    reloc_type = 10 if pe32_plus else 3  # DIR64 / HIGHLOW
    blob = struct.pack("<IIHH", DATA_RVA, 12, (reloc_type << 12) | 0x0, (reloc_type << 12) | 0x8)
    blob += struct.pack("<IIHH", TEXT_RVA, 12, (reloc_type << 12) | 0x10, 0)
    return blob


def symbol_table() -> bytes:
    """Three COFF symbol records (one auxiliary) plus the string table."""
    records = struct.pack("<8sIhHBB", b"main", 0, 1, 0x20, 2, 0)
    long_name = b"\x00\x00\x00\x00" + struct.pack("<I", 4)
    records += struct.pack("<8sIhHBB", long_name, 0x10, 1, 0, 3, 1)
    records += bytes(range(18))
    strings = LONG_SYMBOL_NAME.encode("ascii") + b"\x00"
    return records + struct.pack("<I", 4 + len(strings)) + strings


def make_pe(
    pe32_plus: bool = True,
    *,
    size_of_headers: int = 0x400,
    relocations: bool = True,
    imports: bool = True,
    exports: bool = True,
    tls: bool = True,
    debug: bool = True,
    resources: bool = True,
    symbols: bool = False,
    overlay: bytes = b"",
    certificate: bytes | None = None,
    dll: bool = False,
    checksum: bool = True,
) -> SyntheticPE:
    """Assemble a synthetic PE image.

    Args:
        pe32_plus: PE32+ (x64) when True, PE32 (x86) otherwise
        size_of_headers: SizeOfHeaders; also where the first section's raw
                         data starts
        relocations: Include the .reloc section and directory
        imports, exports, tls, debug, resources: Set the matching directory
        symbols: Append a COFF symbol table after the section data
        overlay: Bytes appended after the section data (and symbols)
        certificate: Certificate blob; appended as one WIN_CERTIFICATE record
        dll: Set IMAGE_FILE_DLL
        checksum: Store a valid CheckSum
    """
    image_base = IMAGE_BASE_64 if pe32_plus else IMAGE_BASE_32
    ptr_fmt = "<Q" if pe32_plus else "<I"
    opt_size = 112 if pe32_plus else 96
    size_of_optional_header = opt_size + 16 * 8

    text = bytearray(TEXT_RAW_SIZE)
    text[0] = 0xC3  # ret
    struct.pack_into(ptr_fmt, text, 0x10, image_base + DATA_RVA)

    data = bytearray(DATA_RAW_SIZE)
    struct.pack_into(ptr_fmt, data, 0x0, image_base + TEXT_RVA)
    struct.pack_into(ptr_fmt, data, 0x8, image_base + RDATA_RVA)
    data[TLS_TEMPLATE_RVA - DATA_RVA : TLS_TEMPLATE_RVA - DATA_RVA + len(TLS_TEMPLATE)] = (
        TLS_TEMPLATE
    )

    rdata_raw = size_of_headers + TEXT_RAW_SIZE
    section_defs = [
        (".text", TEXT_RVA, 0x100, text, SCN_TEXT),
        (".rdata", RDATA_RVA, RDATA_VIRTUAL_SIZE, _build_rdata(pe32_plus, image_base, rdata_raw), SCN_RDATA),
        (".data", DATA_RVA, 0x80, data, SCN_DATA),
    ]
    reloc_blob = relocation_blocks(pe32_plus)
    if relocations:
        reloc = bytearray(RELOC_RAW_SIZE)
        reloc[: len(reloc_blob)] = reloc_blob
        section_defs.append((".reloc", RELOC_RVA, len(reloc_blob), reloc, SCN_RELOC))

    section_table_offset = PE_OFFSET + 4 + 20 + size_of_optional_header
    table_end = section_table_offset + 40 * len(section_defs)
    if table_end > size_of_headers:
        raise ValueError(f"Section table (ends 0x{table_end:x}) does not fit the headers")

    image = SyntheticPE(data=b"", pe32_plus=pe32_plus, image_base=image_base)
    raw_cursor = size_of_headers
    body = bytearray(size_of_headers)
    for name, va, vsize, content, chars in section_defs:
        image.sections[name] = (va, raw_cursor, len(content))
        body += content
        raw_cursor += len(content)
    last_va, last_vsize = section_defs[-1][1], section_defs[-1][2]
    size_of_image = (last_va + last_vsize + SECTION_ALIGNMENT - 1) & ~(SECTION_ALIGNMENT - 1)
    image.overlay_offset = len(body)

    # Data after the sections
    num_symbols = 0
    if symbols:
        image.symbol_table_offset = len(body)
        body += symbol_table()
        num_symbols = 3
    body += overlay
    if certificate is not None:
        body += b"\x00" * (-len(body) % 8)
        record = struct.pack("<IHH", 8 + len(certificate), 0x0200, 0x0002) + certificate
        record += b"\x00" * (-len(record) % 8)
        image.certificate_offset = len(body)
        image.certificate_size = len(record)
        body += record

    # Headers
    struct.pack_into("<H", body, 0, 0x5A4D)
    struct.pack_into("<I", body, 0x3C, PE_OFFSET)
    body[0x40 : 0x40 + len(DOS_STUB)] = DOS_STUB
    body[PE_OFFSET : PE_OFFSET + 4] = b"PE\x00\x00"

    characteristics = 0x0002 | (0x0020 if pe32_plus else 0x0100)
    if dll:
        characteristics |= 0x2000
    struct.pack_into(
        "<HHIIIHH",
        body,
        PE_OFFSET + 4,
        0x8664 if pe32_plus else 0x014C,
        len(section_defs),
        0x5F000000,
        image.symbol_table_offset,
        num_symbols,
        size_of_optional_header,
        characteristics,
    )

    opt_offset = PE_OFFSET + 24
    dll_characteristics = 0x0140 | (0x0020 if pe32_plus else 0)
    if pe32_plus:
        struct.pack_into(
            "<HBBIIIIIQIIHHHHHHIIIIHHQQQQII",
            body,
            opt_offset,
            0x20B,
            14,
            0,
            TEXT_RAW_SIZE,  # SizeOfCode
            RDATA_RAW_SIZE + DATA_RAW_SIZE,  # SizeOfInitializedData
            0,
            TEXT_RVA,  # AddressOfEntryPoint
            TEXT_RVA,  # BaseOfCode
            image_base,
            SECTION_ALIGNMENT,
            FILE_ALIGNMENT,
            6, 0, 0, 0, 6, 0,
            0,  # Win32VersionValue
            size_of_image,
            size_of_headers,
            0,  # CheckSum
            3,  # Subsystem: console
            dll_characteristics,
            0x100000, 0x1000, 0x100000, 0x1000,
            0,  # LoaderFlags
            16,
        )
    else:
        struct.pack_into(
            "<HBBIIIIIIIIIHHHHHHIIIIHHIIIIII",
            body,
            opt_offset,
            0x10B,
            14,
            0,
            TEXT_RAW_SIZE,
            RDATA_RAW_SIZE + DATA_RAW_SIZE,
            0,
            TEXT_RVA,
            TEXT_RVA,
            RDATA_RVA,  # BaseOfData
            image_base,
            SECTION_ALIGNMENT,
            FILE_ALIGNMENT,
            6, 0, 0, 0, 6, 0,
            0,
            size_of_image,
            size_of_headers,
            0,
            3,
            dll_characteristics,
            0x100000, 0x1000, 0x100000, 0x1000,
            0,
            16,
        )

    directories = [(0, 0)] * 16
    if exports:
        directories[0] = (EXPORT_DIR_RVA, EXPORT_DIR_SIZE)
    if imports:
        directories[1] = (IMPORT_DIR_RVA, IMPORT_DIR_SIZE)
        directories[12] = (K32_IAT_RVA, IAT_DIR_SIZE)
    if resources:
        directories[2] = (RESOURCE_DIR_RVA, RESOURCE_DIR_SIZE)
    if certificate is not None:
        directories[4] = (image.certificate_offset, image.certificate_size)
    if relocations:
        directories[5] = (RELOC_RVA, len(reloc_blob))
    if debug:
        directories[6] = (DEBUG_DIR_RVA, 28)
    if tls:
        directories[9] = (TLS_DIR_RVA, 40 if pe32_plus else 24)
    dir_offset = opt_offset + opt_size
    for index, (rva, size) in enumerate(directories):
        struct.pack_into("<II", body, dir_offset + index * 8, rva, size)

    for index, (name, va, vsize, content, chars) in enumerate(section_defs):
        _, raw_offset, raw_size = image.sections[name]
        struct.pack_into(
            "<8sIIIIIIHHI",
            body,
            section_table_offset + index * 40,
            name.encode("ascii"),
            vsize,
            va,
            raw_size,
            raw_offset,
            0,
            0,
            0,
            0,
            chars,
        )

    if checksum:
        struct.pack_into("<I", body, opt_offset + 64, compute_checksum(body, opt_offset))

    image.data = bytes(body)
    return image


def directory_entry_offset(image: SyntheticPE, index: int) -> int:
    """File offset of data directory entry index in a make_pe image."""
    opt_size = 112 if image.pe32_plus else 96
    return PE_OFFSET + 24 + opt_size + index * 8


def patch_directory(image: SyntheticPE, index: int, rva: int, size: int) -> bytes:
    """Copy of the image with data directory index set to (rva, size)."""
    data = bytearray(image.data)
    struct.pack_into("<II", data, directory_entry_offset(image, index), rva, size)
    return bytes(data)


def patch_bytes(data: bytes, offset: int, fmt: str, *values) -> bytes:
    """Copy of data with struct values packed at offset."""
    out = bytearray(data)
    struct.pack_into(fmt, out, offset, *values)
    return bytes(out)
