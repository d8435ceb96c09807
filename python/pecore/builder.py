"""
Builder: Binary -> bytes.

The builder works on a deep copy of the binary, so building never changes
the caller's model. It resolves pending directory edits (imports,
relocations, TLS), recomputes the header fields that depend on the section
table, checks the layout, and writes the file in order:

    DOS header + stub, PE headers, data directories, section table,
    section contents (padded to their raw size), overlay.

Bytes of the original file that no section or header covers (padding,
gaps between sections) are carried over from the parsed input, so an
unedited binary builds to the same bytes it was parsed from.
"""

import copy
import logging
import struct
from dataclasses import dataclass

from .binary import Binary, EditState
from .checksum import compute_checksum
from .debug import debug_table_bytes
from .directories import DataDirectoryType
from .errors import InconsistentLayoutError
from .imports import descriptor_table_bytes
from .relocations import relocations_to_bytes
from .section import Section, SectionType
from .types import (
    IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE,
    IMAGE_FILE_RELOCS_STRIPPED,
    OPTIONAL_HEADER_CHECKSUM_OFFSET,
    SECTION_HEADER_SIZE,
    round_up_to_alignment,
)
from .verify import LayoutVerifier

logger = logging.getLogger(__name__)

# Section created when rebuilt relocations outgrow their original region
RELOCATION_SECTION_NAME = ".reloc"


@dataclass
class BuildConfig:
    """Options for Builder."""

    recompute_checksum: bool = True


class Builder:
    """Serialize a Binary.

    Usage:
        data = Builder(binary, BuildConfig(recompute_checksum=False)).build()
    """

    def __init__(self, binary: Binary, config: BuildConfig | None = None):
        self._source = binary
        self._config = config or BuildConfig()
        self._binary: Binary | None = None

    def build(self) -> bytes:
        """Build the image.

        Raises:
            InconsistentLayoutError: If the edited layout breaks PE invariants
        """
        with self._source.frozen():
            binary = copy.deepcopy(self._source)
            binary._frozen = 0
            self._binary = binary

            self._finalize_imports()
            self._finalize_relocations()
            self._finalize_tls()
            self._update_headers()

            result = LayoutVerifier(binary).run_all_checks()
            if not result.passed:
                raise InconsistentLayoutError(
                    f"Layout of {binary.name or 'binary'} is inconsistent: "
                    + "; ".join(result.errors),
                    errors=result.errors,
                )
            for warning in result.warnings:
                logger.debug("Layout warning: %s", warning)

            return self._serialize()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _patch(self, rva: int, data: bytes, what: str) -> None:
        """Overwrite section content at rva."""
        section = self._binary.section_table.find_by_rva(rva)
        if section is None:
            raise InconsistentLayoutError(f"Cannot write {what} at RVA 0x{rva:x}: not in any section")
        delta = rva - section.virtual_address
        if delta + len(data) > section.raw_size:
            raise InconsistentLayoutError(
                f"Cannot write {what} at RVA 0x{rva:x}: 0x{len(data):x} bytes exceed "
                f"the raw data of section {section.name!r}"
            )
        content = bytearray(section.content)
        if len(content) < delta + len(data):
            content.extend(b"\x00" * (delta + len(data) - len(content)))
        content[delta : delta + len(data)] = data
        section.content = bytes(content)

    def _drop_bound_imports(self) -> None:
        directories = self._binary.directories
        if directories.has(DataDirectoryType.BOUND_IMPORT):
            directories.get(DataDirectoryType.BOUND_IMPORT).clear()

    # =========================================================================
    # Pending directory edits
    # =========================================================================

    def _finalize_imports(self) -> None:
        binary = self._binary
        if binary._import_state is EditState.UNCHANGED:
            return
        if not binary._imports:
            logger.debug("No imports left; clearing import directory")
            if binary.directories.has(DataDirectoryType.IMPORT_TABLE):
                binary.data_directory(DataDirectoryType.IMPORT_TABLE).clear()
            self._drop_bound_imports()
            return

        # Generated descriptors are laid out when they are edited
        if binary._import_section is not None:
            return

        # Only removals: rewrite the original table where it was
        import_dir = binary.data_directory(DataDirectoryType.IMPORT_TABLE)
        rva, capacity = binary._import_table_region
        table = descriptor_table_bytes(binary._imports)
        self._patch(rva, table + b"\x00" * (capacity - len(table)), "import descriptors")
        import_dir.rva = rva
        import_dir.size = len(table)
        self._drop_bound_imports()
        logger.debug("Rewrote %d import descriptors in place", len(binary._imports))

    def _finalize_relocations(self) -> None:
        binary = self._binary
        state = binary._relocation_state
        if state is EditState.UNCHANGED:
            return
        directories = binary.directories

        if not binary._relocations:
            # A short directory table has no relocation slot to clear
            if directories.has(DataDirectoryType.BASE_RELOCATION_TABLE):
                directories.get(DataDirectoryType.BASE_RELOCATION_TABLE).clear()
            if state is EditState.REMOVED:
                binary.optional_header.DllCharacteristics &= ~IMAGE_DLLCHARACTERISTICS_DYNAMIC_BASE
                binary.header.Characteristics |= IMAGE_FILE_RELOCS_STRIPPED
            logger.debug("Relocations stripped")
            return

        reloc_dir = directories.get(DataDirectoryType.BASE_RELOCATION_TABLE)
        blob = relocations_to_bytes(binary._relocations)
        region = binary._relocation_region
        if region is not None and len(blob) <= region[1]:
            rva, capacity = region
            self._patch(rva, blob + b"\x00" * (capacity - len(blob)), "relocations")
            reloc_dir.rva = rva
        else:
            handle = binary.add_section(
                Section(name=RELOCATION_SECTION_NAME, content=blob),
                SectionType.RELOCATION,
            )
            reloc_dir.rva = handle.virtual_address
            logger.debug("Relocations moved to new section at RVA 0x%x", reloc_dir.rva)
        reloc_dir.size = len(blob)

    def _finalize_tls(self) -> None:
        binary = self._binary
        if not binary._tls_modified:
            return
        tls = binary.tls
        pe32_plus = binary.optional_header.is_pe32_plus
        tls_dir = binary.data_directory(DataDirectoryType.TLS_TABLE)
        self._patch(tls_dir.rva, tls.to_struct(pe32_plus).to_bytes(), "TLS directory")

        if tls.address_of_callbacks:
            array = tls.callbacks_bytes(pe32_plus)
            if tls.address_of_callbacks == binary._tls_callbacks_address:
                ptr_size = binary.optional_header.THUNK_SIZE
                capacity = (binary._tls_callback_capacity + 1) * ptr_size
                array = array.ljust(capacity, b"\x00")
            self._patch(binary.va_to_rva(tls.address_of_callbacks), array, "TLS callbacks")

    # =========================================================================
    # Layout
    # =========================================================================

    def _update_headers(self) -> None:
        """Recompute header fields that follow the section table."""
        binary = self._binary
        coff_hdr = binary.header
        opt_hdr = binary.optional_header
        coff_hdr.NumberOfSections = len(binary.sections)
        table_end = binary.headers.section_table_end(len(binary.sections))
        opt_hdr.SizeOfHeaders = max(
            opt_hdr.SizeOfHeaders,
            round_up_to_alignment(table_end, binary.file_alignment),
        )
        opt_hdr.SizeOfImage = max(
            opt_hdr.SizeOfImage,
            round_up_to_alignment(
                binary.section_table.max_virtual_end(), binary.section_alignment
            ),
        )

    def _backing_image(self) -> bytes:
        """Original file bytes before the overlay, moved by the raw shift."""
        binary = self._binary
        source = binary._source
        if source is None:
            return bytes(binary.optional_header.SizeOfHeaders)
        head = source.prefix[: source.first_raw_offset]
        body = source.prefix[source.first_raw_offset :]
        return head + b"\x00" * binary._raw_shift + body

    def _relocate_file_offsets(self, body_end: int) -> None:
        """Move file-offset references along with section data and overlay."""
        binary = self._binary
        source = binary._source
        if source is None:
            return
        overlay_delta = body_end - source.overlay_offset
        raw_shift = binary._raw_shift
        if not overlay_delta and not raw_shift:
            return

        def relocate(offset: int) -> int:
            if offset >= source.overlay_offset:
                return offset + overlay_delta
            if offset >= source.first_raw_offset:
                return offset + raw_shift
            return offset

        directories = binary.directories
        if directories.is_present(DataDirectoryType.CERTIFICATE_TABLE):
            cert_dir = directories.get(DataDirectoryType.CERTIFICATE_TABLE)
            cert_dir.rva = relocate(cert_dir.rva)
            if binary.signature is not None:
                binary.signature.file_offset = cert_dir.rva

        coff_hdr = binary.header
        if coff_hdr.PointerToSymbolTable:
            coff_hdr.PointerToSymbolTable = relocate(coff_hdr.PointerToSymbolTable)

        for section in binary.sections:
            if section.pointer_to_relocations:
                section.pointer_to_relocations = relocate(section.pointer_to_relocations)
            if section.pointer_to_linenumbers:
                section.pointer_to_linenumbers = relocate(section.pointer_to_linenumbers)

        if binary._debug:
            for entry in binary._debug:
                if entry.pointer_to_raw_data:
                    entry.pointer_to_raw_data = relocate(entry.pointer_to_raw_data)
            debug_dir = directories.get(DataDirectoryType.DEBUG)
            self._patch(debug_dir.rva, debug_table_bytes(binary._debug), "debug directory")

        logger.debug(
            "Relocated file offsets: raw shift 0x%x, overlay delta 0x%x",
            raw_shift,
            overlay_delta,
        )

    def _serialize(self) -> bytes:
        binary = self._binary
        headers = binary.headers
        sections = binary.sections

        backing = self._backing_image()
        table_offset = headers.section_table_offset
        table_end = headers.section_table_end(len(sections))
        body_end = max(binary.section_table.max_raw_end(), len(backing), table_end)
        self._relocate_file_offsets(body_end)

        out = bytearray(body_end)
        out[: len(backing)] = backing

        header_bytes = headers.to_bytes(binary.directories.to_bytes())
        out[: len(header_bytes)] = header_bytes
        for index, section in enumerate(sections):
            section.to_header().write_to(out, table_offset + index * SECTION_HEADER_SIZE)
        for section in sections:
            if section.raw_size:
                out[section.raw_offset : section.end_raw_offset] = section.padded_content

        out += binary.overlay

        directories = binary.directories
        if directories.is_present(DataDirectoryType.CERTIFICATE_TABLE):
            cert_dir = directories.get(DataDirectoryType.CERTIFICATE_TABLE)
            if cert_dir.rva + cert_dir.size > len(out):
                raise InconsistentLayoutError(
                    f"Certificate table [0x{cert_dir.rva:x}, "
                    f"0x{cert_dir.rva + cert_dir.size:x}) lies beyond the end of "
                    f"the file (0x{len(out):x})"
                )

        if self._config.recompute_checksum:
            checksum_offset = headers.optional_header_offset + OPTIONAL_HEADER_CHECKSUM_OFFSET
            checksum = compute_checksum(out, headers.optional_header_offset)
            struct.pack_into("<I", out, checksum_offset, checksum)

        logger.debug(
            "Built %s: %d bytes, %d sections", binary.name or "binary", len(out), len(sections)
        )
        return bytes(out)
