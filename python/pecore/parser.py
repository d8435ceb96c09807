"""
PE parser: bytes -> Binary.

Header-level corruption (bad magic, truncated headers or section table,
absurd counts) is a hard ParseError. Data directories are decoded one at a
time; a directory that fails to translate or decode is recorded as absent
and reported in Binary.anomalies, and the rest of the image stays usable.
"""

import logging
import struct

from .address import AddressTranslator
from .binary import Binary, SourceLayout
from .byteview import ByteView
from .debug import parse_debug
from .directories import DataDirectoryType, DirectoryRegistry
from .errors import ParseError, PEError
from .exports import parse_exports
from .imports import IMPORT_SECTION_NAME, parse_imports
from .relocations import parse_relocations
from .resources import parse_resources_root
from .section import Section, SectionTable
from .signature import parse_signature
from .symbols import parse_symbols
from .tls import parse_tls
from .types import (
    DATA_DIRECTORY_SIZE,
    DOS_HEADER_SIZE,
    IMPORT_DESCRIPTOR_SIZE,
    PE_SIGNATURE,
    SECTION_HEADER_SIZE,
    CoffHeader,
    DosHeader,
    HeaderModel,
    ImageDataDirectory,
    SectionHeader,
    parse_optional_header,
)

logger = logging.getLogger(__name__)


class Parser:
    """Builds a Binary from raw bytes.

    Usage:
        binary = Parser.parse(Path("foo.dll").read_bytes(), name="foo.dll")

    Each call works on its own state, so concurrent parses of distinct
    buffers are safe. The limits below guard against oversized tables in
    malformed files.
    """

    # Reasonable limits for PE structures to prevent DoS from malformed files
    MAX_NUMBER_OF_SECTIONS = 256
    MAX_NUMBER_OF_DATA_DIRECTORIES = 64
    MAX_IMPORT_DESCRIPTORS = 4096
    MAX_IMPORT_THUNKS = 0x10000
    MAX_EXPORTS = 0x10000
    MAX_RELOCATION_BLOCKS = 0x10000
    MAX_TLS_CALLBACKS = 4096
    MAX_DEBUG_ENTRIES = 64
    MAX_SYMBOLS = 0x100000
    MAX_CERTIFICATES = 64

    def __init__(self, data: bytes | bytearray, name: str = ""):
        self._view = ByteView(data)
        self._name = name
        self._anomalies: list[str] = []

    @classmethod
    def parse(cls, data: bytes | bytearray, name: str = "") -> Binary:
        """Parse a PE image.

        Raises:
            ParseError: If the headers or the section table are unusable
        """
        return cls(data, name)._parse()

    # =========================================================================
    # Headers
    # =========================================================================

    def _parse_headers(self) -> HeaderModel:
        data = self._view.data
        dos_hdr = DosHeader.from_bytes(data)
        pe_offset = dos_hdr.e_lfanew

        # Validate PE offset is within bounds
        if pe_offset + 4 > len(data):
            raise ParseError(
                f"Invalid PE header offset {pe_offset:#x}: "
                f"must be within file bounds (0 to {len(data) - 4})"
            )

        pe_sig = data[pe_offset : pe_offset + 4]
        if pe_sig != PE_SIGNATURE:
            raise ParseError(f"Invalid PE signature: {pe_sig!r}")

        coff_offset = pe_offset + 4
        coff_hdr = CoffHeader.from_bytes(data, coff_offset)
        opt_offset = coff_offset + CoffHeader.SIZE
        opt_hdr = parse_optional_header(data, opt_offset)

        num_dirs = opt_hdr.NumberOfRvaAndSizes
        if num_dirs > self.MAX_NUMBER_OF_DATA_DIRECTORIES:
            raise ParseError(
                f"NumberOfRvaAndSizes ({num_dirs}) exceeds maximum "
                f"({self.MAX_NUMBER_OF_DATA_DIRECTORIES})"
            )
        dirs_end = opt_hdr.SIZE + num_dirs * DATA_DIRECTORY_SIZE
        if dirs_end > coff_hdr.SizeOfOptionalHeader:
            raise ParseError(
                f"NumberOfRvaAndSizes ({num_dirs}) does not fit SizeOfOptionalHeader "
                f"({coff_hdr.SizeOfOptionalHeader}): need {dirs_end} bytes"
            )
        extra = self._view.read(
            opt_offset + dirs_end,
            coff_hdr.SizeOfOptionalHeader - dirs_end,
            "optional header",
        )

        dos_stub = data[DOS_HEADER_SIZE:pe_offset] if pe_offset > DOS_HEADER_SIZE else b""
        return HeaderModel(
            dos_header=dos_hdr,
            dos_stub=dos_stub,
            coff_header=coff_hdr,
            optional_header=opt_hdr,
            optional_header_extra=extra,
        )

    def _parse_data_directories(self, headers: HeaderModel) -> DirectoryRegistry:
        """Parse all data directories."""
        offset = headers.data_directories_offset
        raw = [
            ImageDataDirectory.from_bytes(self._view.data, offset + i * DATA_DIRECTORY_SIZE)
            for i in range(headers.optional_header.NumberOfRvaAndSizes)
        ]
        return DirectoryRegistry.from_structs(raw)

    def _parse_sections(self, headers: HeaderModel) -> SectionTable:
        """Parse all section headers and read their raw data."""
        num_sections = headers.coff_header.NumberOfSections
        if num_sections > self.MAX_NUMBER_OF_SECTIONS:
            raise ParseError(
                f"NumberOfSections ({num_sections}) exceeds maximum "
                f"({self.MAX_NUMBER_OF_SECTIONS})"
            )
        offset = headers.section_table_offset
        self._view.check(offset, num_sections * SECTION_HEADER_SIZE, "section table")

        sections = []
        for i in range(num_sections):
            shdr = SectionHeader.from_bytes(self._view.data, offset + i * SECTION_HEADER_SIZE)
            content = b""
            if shdr.SizeOfRawData:
                content = self._view.read_available(
                    shdr.PointerToRawData, shdr.SizeOfRawData
                )
                if len(content) < shdr.SizeOfRawData:
                    self._anomaly(
                        f"Section {shdr.name_str!r} raw data truncated: "
                        f"{len(content)} of {shdr.SizeOfRawData} bytes in file"
                    )
            sections.append(Section.from_header(shdr, content))
        return SectionTable(sections)

    # =========================================================================
    # Directories
    # =========================================================================

    def _anomaly(self, message: str) -> None:
        logger.warning("%s%s", f"{self._name}: " if self._name else "", message)
        self._anomalies.append(message)

    def _decode(self, registry: DirectoryRegistry, kind: DataDirectoryType, decoder):
        """Run decoder for a present directory; failures become anomalies."""
        if not registry.has(kind):
            return None
        directory = registry.get(kind)
        if not directory.is_present:
            return None
        try:
            return decoder(directory.rva, directory.size)
        except (PEError, struct.error) as e:
            self._anomaly(f"{kind.name} directory ignored: {e}")
            return None

    def _parse(self) -> Binary:
        view = self._view
        headers = self._parse_headers()
        registry = self._parse_data_directories(headers)
        sections = self._parse_sections(headers)
        opt_hdr = headers.optional_header

        binary = Binary(
            self._name,
            headers.pe_type,
            headers=headers,
            sections=list(sections),
            directories=registry,
        )
        translator = AddressTranslator(sections, opt_hdr.ImageBase, opt_hdr.SizeOfHeaders)
        rva_to_offset = translator.rva_to_offset
        pe32_plus = opt_hdr.is_pe32_plus

        def decode_imports(rva, size):
            # Descriptors left in a generated section by an earlier build
            generated = sections.find_by_rva(rva)
            if generated is not None and generated.name != IMPORT_SECTION_NAME:
                generated = None
            generated_range = (
                (generated.virtual_address, generated.end_rva) if generated else None
            )
            imports, count = parse_imports(
                view,
                rva_to_offset,
                rva,
                opt_hdr.THUNK_SIZE,
                opt_hdr.ORDINAL_FLAG,
                self.MAX_IMPORT_DESCRIPTORS,
                self.MAX_IMPORT_THUNKS,
                generated_range,
            )
            region = (rva, (count + 1) * IMPORT_DESCRIPTOR_SIZE)
            return imports, region, generated

        decoded = self._decode(registry, DataDirectoryType.IMPORT_TABLE, decode_imports)
        if decoded is not None:
            binary._imports, binary._import_table_region, binary._import_section = decoded

        binary._exports = self._decode(
            registry,
            DataDirectoryType.EXPORT_TABLE,
            lambda rva, size: parse_exports(
                view, rva_to_offset, rva, size, self.MAX_EXPORTS
            ),
        )

        relocations = self._decode(
            registry,
            DataDirectoryType.BASE_RELOCATION_TABLE,
            lambda rva, size: parse_relocations(
                view, rva_to_offset(rva), size, self.MAX_RELOCATION_BLOCKS
            ),
        )
        if relocations is not None:
            binary._relocations = relocations
            reloc_dir = registry.get(DataDirectoryType.BASE_RELOCATION_TABLE)
            binary._relocation_region = (reloc_dir.rva, reloc_dir.size)

        tls = self._decode(
            registry,
            DataDirectoryType.TLS_TABLE,
            lambda rva, size: parse_tls(
                view,
                rva_to_offset,
                translator.va_to_offset,
                rva,
                pe32_plus,
                self.MAX_TLS_CALLBACKS,
            ),
        )
        if tls is not None:
            binary._tls = tls
            binary._tls_callbacks_address = tls.address_of_callbacks
            binary._tls_callback_capacity = len(tls.callbacks)

        debug = self._decode(
            registry,
            DataDirectoryType.DEBUG,
            lambda rva, size: parse_debug(
                view, rva_to_offset(rva), size, self.MAX_DEBUG_ENTRIES
            ),
        )
        if debug is not None:
            binary._debug = debug

        binary._resources = self._decode(
            registry,
            DataDirectoryType.RESOURCE_TABLE,
            lambda rva, size: parse_resources_root(view, rva_to_offset(rva), size),
        )

        # The certificate table is addressed by file offset
        binary._signature = self._decode(
            registry,
            DataDirectoryType.CERTIFICATE_TABLE,
            lambda offset, size: parse_signature(
                view, offset, size, self.MAX_CERTIFICATES
            ),
        )

        coff_hdr = headers.coff_header
        if coff_hdr.PointerToSymbolTable and coff_hdr.NumberOfSymbols:
            try:
                binary._symbols = parse_symbols(
                    view,
                    coff_hdr.PointerToSymbolTable,
                    coff_hdr.NumberOfSymbols,
                    self.MAX_SYMBOLS,
                )
            except (PEError, struct.error) as e:
                self._anomaly(f"COFF symbol table ignored: {e}")

        # Overlay: everything after the last section's raw data
        first_raw = sections.first_raw_offset()
        if first_raw is not None:
            overlay_offset = min(sections.max_raw_end(), len(view))
        else:
            overlay_offset = min(opt_hdr.SizeOfHeaders, len(view))
            first_raw = overlay_offset
        binary._overlay = view.data[overlay_offset:]
        binary._source = SourceLayout(
            prefix=view.data[:overlay_offset],
            first_raw_offset=min(first_raw, overlay_offset),
            overlay_offset=overlay_offset,
        )
        binary.anomalies.extend(self._anomalies)

        logger.debug(
            "Parsed %s: %d sections, %d imports, overlay %d bytes",
            self._name or "<buffer>",
            len(sections),
            len(binary._imports),
            len(binary._overlay),
        )
        return binary
