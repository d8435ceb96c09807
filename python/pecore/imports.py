"""
Import table model, decoder and generated-section layout.

Descriptors parsed from the file are kept verbatim: their lookup tables,
address tables and name strings are never moved. Functions and libraries
added afterwards are emitted as extra descriptors into a generated section,
laid out by ImportSectionLayout:

    +--------------------------+  base
    | descriptor table + null  |  original descriptors, then generated ones
    +--------------------------+
    | import lookup tables     |  one null-terminated array per generated
    +--------------------------+  descriptor
    | import address tables    |  same shape as the lookup tables
    +--------------------------+
    | hint/name entries        |  u16 hint + name + NUL, even aligned
    +--------------------------+
    | DLL names                |
    +--------------------------+
"""

import logging
import struct
from dataclasses import dataclass

from .byteview import ByteView
from .errors import ParseError
from .types import (
    IMPORT_DESCRIPTOR_SIZE,
    ImportDescriptor,
    round_up_to_alignment,
)

logger = logging.getLogger(__name__)

# Name of the section holding generated import descriptors
IMPORT_SECTION_NAME = ".pimport"


@dataclass
class ImportEntry:
    """One imported symbol: by name (with hint) or by ordinal."""

    name: str | None = None
    ordinal: int | None = None
    hint: int = 0
    iat_rva: int = 0  # RVA of the import address table slot
    iat_value: int = 0  # Value stored in the IAT slot on disk

    @property
    def is_ordinal(self) -> bool:
        return self.name is None

    def __str__(self) -> str:
        label = self.name if self.name is not None else f"#{self.ordinal}"
        return f"{label} (iat=0x{self.iat_rva:x})"


class Import:
    """Functions imported from one library.

    descriptors holds the descriptors parsed from the file for this library
    (a library may be split over several); it is empty for a library added
    after parsing. The first original_entry_count entries are served by
    those descriptors; later entries by a generated one.

    entries is read-only; add functions through Binary.add_import_function.
    """

    def __init__(
        self,
        name: str,
        entries: list[ImportEntry] | None = None,
        descriptors: list[ImportDescriptor] | None = None,
        original_entry_count: int = 0,
    ):
        self.name = name
        self._entries: list[ImportEntry] = list(entries or [])
        self.descriptors: list[ImportDescriptor] = list(descriptors or [])
        self.original_entry_count = original_entry_count

    @property
    def entries(self) -> tuple[ImportEntry, ...]:
        return tuple(self._entries)

    @property
    def is_original(self) -> bool:
        return bool(self.descriptors)

    @property
    def pending_entries(self) -> list[ImportEntry]:
        """Entries that live in the generated section."""
        return self._entries[self.original_entry_count :]

    @property
    def needs_generated_descriptor(self) -> bool:
        return not self.is_original or bool(self.pending_entries)

    def get_entry(self, function: str) -> ImportEntry | None:
        for entry in self._entries:
            if entry.name == function:
                return entry
        return None

    def _append_entry(self, entry: ImportEntry) -> None:
        self._entries.append(entry)

    def _remove_entry(self, entry: ImportEntry) -> None:
        self._entries.remove(entry)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Import):
            return NotImplemented
        return (
            self.name == other.name
            and self._entries == other._entries
            and self.descriptors == other.descriptors
            and self.original_entry_count == other.original_entry_count
        )

    def __repr__(self) -> str:
        return (
            f"Import(name={self.name!r}, entries={self._entries!r}, "
            f"descriptors={self.descriptors!r}, "
            f"original_entry_count={self.original_entry_count})"
        )

    def __str__(self) -> str:
        return f"{self.name} ({len(self._entries)} functions)"


def find_import(imports: list[Import], name: str) -> Import | None:
    """First library whose name matches, ignoring case."""
    folded = name.casefold()
    for imp in imports:
        if imp.name.casefold() == folded:
            return imp
    return None


# =============================================================================
# Decoding
# =============================================================================


def parse_imports(
    view: ByteView,
    rva_to_offset,
    directory_rva: int,
    thunk_size: int,
    ordinal_flag: int,
    max_descriptors: int,
    max_thunks: int,
    generated_range: tuple[int, int] | None = None,
) -> tuple[list[Import], int]:
    """Decode the import descriptor table starting at directory_rva.

    Descriptors naming the same library (ignoring case) are merged into one
    Import. Descriptors whose address table lies in generated_range were
    emitted into a generated import section by an earlier build; their
    entries come back as pending entries, so the next layout regenerates
    them instead of keeping a second descriptor for the library.

    Args:
        view: Input buffer
        rva_to_offset: Callable translating RVAs (raises AddressError)
        directory_rva: RVA of the first descriptor
        thunk_size: 4 for PE32, 8 for PE32+
        ordinal_flag: High bit marking import-by-ordinal thunks
        max_descriptors: Upper bound on descriptors read
        max_thunks: Upper bound on thunks read per descriptor
        generated_range: [start, end) RVAs of the generated import section

    Returns:
        The imports and the number of descriptors read (null excluded)

    Raises:
        ParseError / AddressError: If any part of the table is unreadable
    """
    thunk_fmt = "<Q" if thunk_size == 8 else "<I"
    imports: list[Import] = []
    generated: list[tuple[str, list[ImportEntry]]] = []
    count = 0
    for index in range(max_descriptors + 1):
        if index == max_descriptors:
            raise ParseError(f"Import table exceeds {max_descriptors} descriptors")
        desc_offset = rva_to_offset(directory_rva + index * IMPORT_DESCRIPTOR_SIZE)
        descriptor = ImportDescriptor.from_bytes(view.data, desc_offset)
        if descriptor.is_null:
            break
        count += 1

        name = view.cstring(rva_to_offset(descriptor.Name)).decode("ascii", "replace")
        lookup_rva = descriptor.OriginalFirstThunk or descriptor.FirstThunk
        entries = []
        for slot in range(max_thunks + 1):
            if slot == max_thunks:
                raise ParseError(f"Import thunks for {name} exceed {max_thunks}")
            thunk_rva = lookup_rva + slot * thunk_size
            (value,) = view.unpack(thunk_fmt, rva_to_offset(thunk_rva), "import thunk")
            if value == 0:
                break
            iat_rva = descriptor.FirstThunk + slot * thunk_size
            (iat_value,) = view.unpack(thunk_fmt, rva_to_offset(iat_rva), "IAT slot")
            if value & ordinal_flag:
                entry = ImportEntry(ordinal=value & 0xFFFF)
            else:
                hint_offset = rva_to_offset(value & 0x7FFFFFFF)
                hint = view.u16(hint_offset)
                func = view.cstring(hint_offset + 2).decode("ascii", "replace")
                entry = ImportEntry(name=func, hint=hint)
            entry.iat_rva = iat_rva
            entry.iat_value = iat_value
            entries.append(entry)

        if generated_range is not None and (
            generated_range[0] <= descriptor.FirstThunk < generated_range[1]
        ):
            generated.append((name, entries))
            logger.debug("Parsed generated import %s with %d entries", name, len(entries))
            continue

        imp = find_import(imports, name)
        if imp is None:
            imp = Import(name=name)
            imports.append(imp)
        imp._entries.extend(entries)
        imp.descriptors.append(descriptor)
        imp.original_entry_count += len(entries)
        logger.debug("Parsed import %s with %d entries", name, len(entries))

    # Generated entries follow every original entry of their library
    for name, entries in generated:
        imp = find_import(imports, name)
        if imp is None:
            imp = Import(name=name)
            imports.append(imp)
        imp._entries.extend(entries)
    return imports, count


# =============================================================================
# Generated section layout
# =============================================================================


@dataclass
class ImportSectionLayout:
    """Serialized generated import section and the RVAs it assigns."""

    content: bytes
    directory_rva: int
    directory_size: int
    # (library index, entry index) -> IAT slot RVA for pending entries
    iat_slots: dict[tuple[int, int], int]


def _hint_name(entry: ImportEntry) -> bytes:
    blob = struct.pack("<H", entry.hint) + entry.name.encode("ascii") + b"\x00"
    if len(blob) % 2:
        blob += b"\x00"
    return blob


def layout_import_section(
    imports: list[Import],
    base_rva: int,
    thunk_size: int,
    ordinal_flag: int,
) -> ImportSectionLayout:
    """Lay out descriptors, lookup/address tables and names at base_rva."""
    thunk_fmt = "<Q" if thunk_size == 8 else "<I"

    # Descriptor table: every original descriptor, then a generated descriptor
    # for each library with pending entries (or no descriptor at all).
    generated = [
        (lib_index, imp)
        for lib_index, imp in enumerate(imports)
        if imp.needs_generated_descriptor
    ]
    originals = [d for imp in imports for d in imp.descriptors]
    num_descriptors = len(originals) + len(generated)
    table_size = (num_descriptors + 1) * IMPORT_DESCRIPTOR_SIZE

    # Thunk arrays
    cursor = round_up_to_alignment(table_size, thunk_size)
    ilt_offsets = []
    for _, imp in generated:
        ilt_offsets.append(cursor)
        cursor += (len(imp.pending_entries) + 1) * thunk_size
    iat_offsets = []
    for _, imp in generated:
        iat_offsets.append(cursor)
        cursor += (len(imp.pending_entries) + 1) * thunk_size

    # Hint/name entries
    hint_name_offsets: dict[tuple[int, int], int] = {}
    hint_names = bytearray()
    names_start = cursor
    for lib_index, imp in generated:
        for entry_index, entry in enumerate(imp.pending_entries):
            if entry.is_ordinal:
                continue
            hint_name_offsets[(lib_index, entry_index)] = names_start + len(hint_names)
            hint_names += _hint_name(entry)
    cursor = names_start + len(hint_names)

    # DLL names
    dll_name_offsets = []
    dll_names = bytearray()
    for _, imp in generated:
        dll_name_offsets.append(cursor + len(dll_names))
        dll_names += imp.name.encode("ascii") + b"\x00"
    total = cursor + len(dll_names)

    content = bytearray(total)
    desc_offset = 0
    for descriptor in originals:
        descriptor.write_to(content, desc_offset)
        desc_offset += IMPORT_DESCRIPTOR_SIZE

    iat_slots = {}
    for gen_index, (lib_index, imp) in enumerate(generated):
        ImportDescriptor(
            OriginalFirstThunk=base_rva + ilt_offsets[gen_index],
            TimeDateStamp=0,
            ForwarderChain=0,
            Name=base_rva + dll_name_offsets[gen_index],
            FirstThunk=base_rva + iat_offsets[gen_index],
        ).write_to(content, desc_offset)
        desc_offset += IMPORT_DESCRIPTOR_SIZE

        for entry_index, entry in enumerate(imp.pending_entries):
            if entry.is_ordinal:
                value = ordinal_flag | entry.ordinal
            else:
                value = base_rva + hint_name_offsets[(lib_index, entry_index)]
            slot = entry_index * thunk_size
            struct.pack_into(thunk_fmt, content, ilt_offsets[gen_index] + slot, value)
            struct.pack_into(thunk_fmt, content, iat_offsets[gen_index] + slot, value)
            iat_slots[(lib_index, imp.original_entry_count + entry_index)] = (
                base_rva + iat_offsets[gen_index] + slot
            )

    content[names_start : names_start + len(hint_names)] = hint_names
    content[cursor:total] = dll_names

    return ImportSectionLayout(
        content=bytes(content),
        directory_rva=base_rva,
        directory_size=table_size,
        iat_slots=iat_slots,
    )


def descriptor_table_bytes(imports: list[Import]) -> bytes:
    """Null-terminated table of the original descriptors that remain."""
    table = b"".join(d.to_bytes() for imp in imports for d in imp.descriptors)
    return table + b"\x00" * IMPORT_DESCRIPTOR_SIZE
