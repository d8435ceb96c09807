"""
Binary: the PE object model and its editing operations.

The Binary class provides a clean abstraction for querying and editing a
PE image. It owns the headers, the section table, the data directory
registry and the decoded entities, and exposes explicit mutators that keep
the image consistent.

Design principles:
- Parse once, modify in memory, build once
- Editors validate before mutating; a failed edit leaves the binary as it was
- Structural edits bump a generation counter, which invalidates handles
- Optional entities have has_X predicates instead of None checks at call sites
"""

import copy
import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .address import AddressTranslator
from .debug import Debug
from .directories import DataDirectory, DataDirectoryType, DirectoryRegistry
from .errors import InvalidStateError, NotFoundError
from .exports import Export
from .imports import (
    IMPORT_SECTION_NAME,
    Import,
    ImportEntry,
    ImportSectionLayout,
    find_import,
    layout_import_section,
)
from .relocations import Relocation
from .resources import ResourceNode
from .section import Section, SectionHandle, SectionTable, SectionType
from .signature import Signature
from .symbols import Symbol
from .tls import TLS
from .types import (
    HeaderModel,
    PEType,
    SECTION_HEADER_SIZE,
    is_power_of_two,
    round_up_to_alignment,
)

logger = logging.getLogger(__name__)


class EditState(enum.Enum):
    """Pending change to a directory, resolved by the builder."""

    UNCHANGED = "unchanged"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class SourceLayout:
    """Where the parsed file kept things, used to relocate file offsets."""

    prefix: bytes  # File contents before the overlay
    first_raw_offset: int  # Start of section data in the original file
    overlay_offset: int  # Start of the overlay in the original file


@dataclass
class _Placement:
    """Where add_section would put a new section."""

    virtual_address: int
    raw_offset: int
    raw_shift: int
    size_of_headers: int


class Binary:
    """A PE image.

    Usage:
        binary = pecore.parse(Path("foo.dll"))

        # Query operations
        text = binary.get_section(".text")
        offset = binary.rva_to_offset(0x1000)

        # Modification operations
        binary.add_import_function("KERNEL32.DLL", "Sleep")
        binary.add_section(Section(name=".extra", content=b"..."))

        # Serialize
        binary.write(Path("foo_modified.dll"))
    """

    FORMAT = "PE"

    def __init__(
        self,
        name: str = "",
        pe_type: PEType = PEType.PE32_PLUS,
        *,
        headers: HeaderModel | None = None,
        sections: list[Section] | None = None,
        directories: DirectoryRegistry | None = None,
    ):
        """Create an empty image, or wrap parsed parts.

        Prefer pecore.parse() to load an existing file.

        Args:
            name: Name of the binary (usually the file name)
            pe_type: PE32 or PE32+, used when headers is not given
        """
        self.name = name
        self._headers = headers or HeaderModel.default(pe_type)
        self._sections = SectionTable(sections)
        self._directories = directories or DirectoryRegistry()
        self.anomalies: list[str] = []

        self._imports: list[Import] = []
        self._exports: Export | None = None
        self._relocations: list[Relocation] = []
        self._tls: TLS | None = None
        self._debug: list[Debug] = []
        self._signature: Signature | None = None
        self._resources: ResourceNode | None = None
        self._symbols: list[Symbol] = []
        self._overlay = b""

        # Layout bookkeeping for the builder
        self._source: SourceLayout | None = None
        self._raw_shift = 0
        self._import_state = EditState.UNCHANGED
        self._import_table_region: tuple[int, int] | None = None
        self._import_section: Section | None = None
        self._relocation_state = EditState.UNCHANGED
        self._relocation_region: tuple[int, int] | None = None
        self._tls_modified = False
        self._tls_callbacks_address = 0
        self._tls_callback_capacity = 0

        self._generation = 0
        self._frozen = 0

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def format(self) -> str:
        return self.FORMAT

    @property
    def headers(self) -> HeaderModel:
        return self._headers

    @property
    def dos_header(self):
        """DOS header."""
        return self._headers.dos_header

    @property
    def dos_stub(self) -> bytes:
        return self._headers.dos_stub

    @property
    def header(self):
        """COFF file header."""
        return self._headers.coff_header

    @property
    def optional_header(self):
        """PE32 or PE32+ optional header."""
        return self._headers.optional_header

    @property
    def pe_type(self) -> PEType:
        return self._headers.pe_type

    @property
    def image_base(self) -> int:
        """Preferred load address."""
        return self.optional_header.ImageBase

    @property
    def file_alignment(self) -> int:
        """File alignment for raw data."""
        return self.optional_header.FileAlignment

    @property
    def section_alignment(self) -> int:
        """Section alignment in memory."""
        return self.optional_header.SectionAlignment

    @property
    def entrypoint(self) -> int:
        """Entry point as a virtual address."""
        return self.image_base + self.optional_header.AddressOfEntryPoint

    @property
    def sizeof_headers(self) -> int:
        """Size of the headers including the section table, before alignment."""
        return self._headers.section_table_end(len(self._sections))

    @property
    def virtual_size(self) -> int:
        """Size of the mapped image, aligned to SectionAlignment."""
        end = max(self._sections.max_virtual_end(), self.optional_header.SizeOfHeaders)
        return round_up_to_alignment(end, self.section_alignment)

    @property
    def sections(self) -> tuple[Section, ...]:
        return self._sections.as_tuple()

    @property
    def section_table(self) -> SectionTable:
        """Query view of the sections; adding one goes through add_section."""
        return SectionTable(self._sections.as_tuple())

    @property
    def imports(self) -> tuple[Import, ...]:
        return tuple(self._imports)

    @property
    def exports(self) -> Export | None:
        return self._exports

    @property
    def relocations(self) -> tuple[Relocation, ...]:
        return tuple(self._relocations)

    @property
    def debug(self) -> tuple[Debug, ...]:
        return tuple(self._debug)

    @property
    def signature(self) -> Signature | None:
        return self._signature

    @property
    def resources(self) -> ResourceNode | None:
        return self._resources

    @property
    def symbols(self) -> tuple[Symbol, ...]:
        return tuple(self._symbols)

    @property
    def overlay(self) -> bytes:
        return self._overlay

    @property
    def data_directories(self) -> tuple[DataDirectory, ...]:
        return self._directories.as_tuple()

    @property
    def directories(self) -> DirectoryRegistry:
        return self._directories

    @property
    def generation(self) -> int:
        """Counter bumped by every structural edit."""
        return self._generation

    @property
    def is_frozen(self) -> bool:
        return self._frozen > 0

    @property
    def tls(self) -> TLS | None:
        return self._tls

    @tls.setter
    def tls(self, value: TLS) -> None:
        """Replace the fields of the existing TLS directory.

        Raises:
            InvalidStateError: No TLS directory, or the callback array does
                not fit where it has to be written
        """
        self._check_editable()
        if self._tls is None:
            raise InvalidStateError("Binary has no TLS directory to update")
        if value.callbacks and not value.address_of_callbacks:
            raise ValueError("TLS callbacks given without AddressOfCallBacks")

        if value.address_of_callbacks == self._tls_callbacks_address:
            if len(value.callbacks) > self._tls_callback_capacity:
                raise InvalidStateError(
                    f"TLS callback array holds {self._tls_callback_capacity} "
                    f"callbacks, got {len(value.callbacks)}"
                )
        elif value.callbacks:
            array_size = len(value.callbacks_bytes(self.optional_header.is_pe32_plus))
            rva = self.va_to_rva(value.address_of_callbacks)
            section = self._sections.find_by_rva(rva)
            if section is None or rva + array_size > section.virtual_address + section.raw_size:
                raise InvalidStateError(
                    f"TLS callback array at 0x{value.address_of_callbacks:x} "
                    "is not backed by section data"
                )

        self._tls = copy.deepcopy(value)
        self._tls_modified = True

    # =========================================================================
    # Predicates
    # =========================================================================

    def has_imports(self) -> bool:
        return bool(self._imports)

    def has_exports(self) -> bool:
        return self._exports is not None

    def has_relocations(self) -> bool:
        return bool(self._relocations)

    def has_tls(self) -> bool:
        return self._tls is not None

    def has_debug(self) -> bool:
        return bool(self._debug)

    def has_signature(self) -> bool:
        return self._signature is not None

    def has_resources(self) -> bool:
        return self._resources is not None

    def has_symbols(self) -> bool:
        return bool(self._symbols)

    def _has_mapped_directory(self, kind: DataDirectoryType) -> bool:
        if not self._directories.is_present(kind):
            return False
        return self.translator.is_mapped(self._directories.get(kind).rva)

    def has_exceptions(self) -> bool:
        return self._has_mapped_directory(DataDirectoryType.EXCEPTION_TABLE)

    def has_configuration(self) -> bool:
        return self._has_mapped_directory(DataDirectoryType.LOAD_CONFIG_TABLE)

    # =========================================================================
    # Address Conversion
    # =========================================================================

    @property
    def translator(self) -> AddressTranslator:
        return AddressTranslator(
            self._sections, self.image_base, self.optional_header.SizeOfHeaders
        )

    def rva_to_offset(self, rva: int) -> int:
        return self.translator.rva_to_offset(rva)

    def va_to_offset(self, va: int) -> int:
        return self.translator.va_to_offset(va)

    def offset_to_rva(self, offset: int) -> int:
        return self.translator.offset_to_rva(offset)

    def rva_to_va(self, rva: int) -> int:
        return self.translator.rva_to_va(rva)

    def va_to_rva(self, va: int) -> int:
        return self.translator.va_to_rva(va)

    # =========================================================================
    # Query Operations
    # =========================================================================

    def get_section(self, name: str) -> Section:
        """First section called name.

        Raises:
            NotFoundError: If no section has that name
        """
        section = self._sections.find(name)
        if section is None:
            raise NotFoundError(f"Section not found: {name}")
        return section

    def section_from_offset(self, offset: int) -> Section:
        section = self._sections.find_by_offset(offset)
        if section is None:
            raise NotFoundError(f"No section contains file offset 0x{offset:x}")
        return section

    def section_from_rva(self, rva: int) -> Section:
        section = self._sections.find_by_rva(rva)
        if section is None:
            raise NotFoundError(f"No section contains RVA 0x{rva:x}")
        return section

    def section_from_virtual_address(self, va: int) -> Section:
        return self.section_from_rva(self.va_to_rva(va))

    def get_export(self) -> Export:
        if self._exports is None:
            raise NotFoundError("Binary has no export table")
        return self._exports

    def get_import(self, name: str) -> Import:
        imp = find_import(self._imports, name)
        if imp is None:
            raise NotFoundError(f"Library not imported: {name}")
        return imp

    def data_directory(self, kind: DataDirectoryType | int) -> DataDirectory:
        """The mutable (rva, size) entry for kind.

        Writes through this entry bypass every consistency check; the builder
        rejects layouts that end up inconsistent.
        """
        return self._directories.get(kind)

    # =========================================================================
    # Edit state
    # =========================================================================

    @contextmanager
    def frozen(self):
        """Reject edits while the block runs (used by the builder)."""
        self._frozen += 1
        try:
            yield self
        finally:
            self._frozen -= 1

    def _check_editable(self) -> None:
        if self._frozen:
            raise InvalidStateError(f"Binary {self.name!r} is being built; edits are rejected")

    def _bump_generation(self) -> None:
        self._generation += 1

    # =========================================================================
    # Section Addition
    # =========================================================================

    def _plan_section(self, raw_size: int) -> _Placement:
        """Compute where a new section would go, without changing anything.

        Raises:
            InvalidStateError: If the grown section table cannot fit before
                the first section's RVA
        """
        file_align = self.file_alignment
        sect_align = self.section_alignment
        if not is_power_of_two(file_align) or not is_power_of_two(sect_align):
            raise InvalidStateError(
                f"Cannot place sections with FileAlignment 0x{file_align:x} "
                f"and SectionAlignment 0x{sect_align:x}"
            )

        table_end = self._headers.section_table_end(len(self._sections) + 1)
        size_of_headers = max(
            self.optional_header.SizeOfHeaders,
            round_up_to_alignment(table_end, file_align),
        )
        first_va = self._sections.first_virtual_address()
        if first_va is not None and size_of_headers > first_va:
            raise InvalidStateError(
                f"No space for new section header. Headers would end at "
                f"0x{size_of_headers:x}, first section starts at RVA 0x{first_va:x}"
            )

        raw_shift = 0
        first_raw = self._sections.first_raw_offset()
        if first_raw is not None and table_end > first_raw:
            raw_shift = round_up_to_alignment(table_end - first_raw, file_align)

        raw_offset = 0
        if raw_size:
            raw_end = self._sections.max_raw_end()
            raw_end = raw_end + raw_shift if raw_end else 0
            raw_offset = round_up_to_alignment(max(raw_end, size_of_headers), file_align)

        virtual_address = round_up_to_alignment(
            max(self._sections.max_virtual_end(), size_of_headers), sect_align
        )
        return _Placement(
            virtual_address=virtual_address,
            raw_offset=raw_offset,
            raw_shift=raw_shift,
            size_of_headers=size_of_headers,
        )

    def add_section(
        self,
        section: Section,
        section_type: SectionType = SectionType.DATA,
    ) -> SectionHandle:
        """Add a new section after the current last section.

        The new section gets the next FileAlignment-aligned file offset and
        the next SectionAlignment-aligned RVA. Its virtual size is the
        section's virtual_size if set, else the content length; its raw size
        is the content length padded to FileAlignment. Characteristics default
        from section_type when the section carries none.

        If the section table grows into the first section's raw data, all
        raw data moves down by a multiple of FileAlignment; RVAs never move.

        Args:
            section: Section to add (name, content and optionally
                     virtual_size / characteristics are used)
            section_type: Purpose of the section

        Returns:
            Handle to the new section, valid until the next structural edit

        Raises:
            ValueError: Section is empty or its name cannot be encoded
            InvalidStateError: Binary is frozen or the headers have no room
        """
        self._check_editable()
        name = section.name.encode("utf-8")[:8].decode("utf-8", "ignore")
        content = bytes(section.content)
        virtual_size = section.virtual_size or len(content)
        if virtual_size == 0:
            raise ValueError(f"Cannot add empty section {name!r}")

        raw_size = round_up_to_alignment(len(content), self.file_alignment)
        placement = self._plan_section(raw_size)

        # Everything validated; apply.
        old_table_end = self._headers.section_table_end(len(self._sections))
        if placement.raw_shift:
            for existing in self._sections:
                if existing.raw_size:
                    existing.raw_offset += placement.raw_shift
            self._raw_shift += placement.raw_shift
            logger.debug("Shifted section raw data by 0x%x", placement.raw_shift)
        self._drop_bound_imports_in(old_table_end, old_table_end + SECTION_HEADER_SIZE)

        new_section = Section(
            name=name,
            content=content,
            virtual_address=placement.virtual_address,
            virtual_size=virtual_size,
            raw_offset=placement.raw_offset,
            raw_size=raw_size,
            characteristics=section.characteristics or section_type.default_characteristics,
        )
        index = self._sections.append(new_section)

        coff_hdr = self.header
        coff_hdr.NumberOfSections = len(self._sections)
        opt_hdr = self.optional_header
        opt_hdr.SizeOfHeaders = placement.size_of_headers
        new_end = round_up_to_alignment(
            placement.virtual_address + virtual_size, self.section_alignment
        )
        opt_hdr.SizeOfImage = max(opt_hdr.SizeOfImage, new_end)

        self._bump_generation()
        logger.debug(
            "Added section %r at RVA 0x%x, file offset 0x%x",
            name,
            placement.virtual_address,
            placement.raw_offset,
        )
        return SectionHandle(self, index, self._generation)

    def _drop_bound_imports_in(self, start: int, end: int) -> None:
        """Clear the bound import directory if it overlaps [start, end)."""
        kind = DataDirectoryType.BOUND_IMPORT
        if not self._directories.is_present(kind):
            return
        bound = self._directories.get(kind)
        if bound.rva < end and start < bound.rva + bound.size:
            logger.debug("Dropping bound import directory overwritten by section table")
            bound.clear()

    def _resolve_section(self, section: Section | SectionHandle) -> Section:
        if isinstance(section, SectionHandle):
            return section.section
        try:
            self._sections.index_of(section)
        except ValueError:
            raise NotFoundError(
                f"Section {section.name!r} does not belong to this binary"
            ) from None
        return section

    def _is_last_section(self, section: Section) -> bool:
        """True if section ends both the VA space and the file data."""
        if section.virtual_address + section.mapped_size < self._sections.max_virtual_end():
            return False
        if section.raw_size and section.end_raw_offset < self._sections.max_raw_end():
            return False
        return True

    def _next_virtual_address_after(self, section: Section) -> int | None:
        following = [
            s.virtual_address
            for s in self._sections
            if s is not section and s.virtual_address > section.virtual_address
        ]
        return min(following) if following else None

    def set_section_content(self, section: Section | SectionHandle, content: bytes) -> None:
        """Replace a section's content.

        Content must fit the section's raw size, except for the last section,
        which grows (raw size padded to FileAlignment).

        Raises:
            ValueError: Content does not fit
        """
        self._check_editable()
        target = self._resolve_section(section)
        content = bytes(content)
        if len(content) <= target.raw_size:
            target.content = content
            return

        if not self._is_last_section(target):
            raise ValueError(
                f"Content of 0x{len(content):x} bytes does not fit section "
                f"{target.name!r} (raw size 0x{target.raw_size:x})"
            )
        raw_size = round_up_to_alignment(len(content), self.file_alignment)
        if not target.raw_size:
            target.raw_offset = round_up_to_alignment(
                max(self._sections.max_raw_end(), self.optional_header.SizeOfHeaders),
                self.file_alignment,
            )
        target.content = content
        target.raw_size = raw_size
        target.virtual_size = max(target.virtual_size, len(content))
        opt_hdr = self.optional_header
        opt_hdr.SizeOfImage = max(
            opt_hdr.SizeOfImage,
            round_up_to_alignment(target.end_rva, self.section_alignment),
        )
        self._bump_generation()

    # =========================================================================
    # Import Operations
    # =========================================================================

    def _plan_imports(self, imports: list[Import]) -> tuple[ImportSectionLayout, str]:
        """Lay out the generated import section for imports.

        Returns the layout and how it is placed: "reuse" (fits the current
        generated section), "grow" (current generated section is last and
        grows) or "new" (a fresh section is appended).
        """
        opt_hdr = self.optional_header
        args = (opt_hdr.THUNK_SIZE, opt_hdr.ORDINAL_FLAG)
        size = len(layout_import_section(imports, 0, *args).content)

        current = self._import_section
        if current is not None:
            next_va = self._next_virtual_address_after(current)
            span = current.raw_size
            if next_va is not None:
                span = min(span, next_va - current.virtual_address)
            if size <= span:
                base, mode = current.virtual_address, "reuse"
            elif self._is_last_section(current):
                base, mode = current.virtual_address, "grow"
            else:
                current = None
        if current is None:
            raw_size = round_up_to_alignment(size, self.file_alignment)
            base, mode = self._plan_section(raw_size).virtual_address, "new"
        return layout_import_section(imports, base, *args), mode

    def _apply_import_layout(self) -> None:
        """Rewrite the generated import section for the current imports."""
        import_dir = self._directories.get(DataDirectoryType.IMPORT_TABLE)
        if not self._imports:
            import_dir.clear()
            return

        layout, mode = self._plan_imports(self._imports)
        if mode == "new":
            handle = self.add_section(
                Section(name=IMPORT_SECTION_NAME, content=layout.content),
                SectionType.IDATA,
            )
            self._import_section = handle.section
        else:
            section = self._import_section
            if mode == "grow":
                section.raw_size = round_up_to_alignment(
                    len(layout.content), self.file_alignment
                )
            section.virtual_size = max(section.virtual_size, len(layout.content))
            section.content = layout.content
            opt_hdr = self.optional_header
            opt_hdr.SizeOfImage = max(
                opt_hdr.SizeOfImage,
                round_up_to_alignment(section.end_rva, self.section_alignment),
            )
        logger.debug(
            "Import descriptors laid out at RVA 0x%x (%s)", layout.directory_rva, mode
        )

        thunk_size = self.optional_header.THUNK_SIZE
        for (lib_index, entry_index), rva in layout.iat_slots.items():
            entry = self._imports[lib_index].entries[entry_index]
            entry.iat_rva = rva
            offset = rva - layout.directory_rva
            entry.iat_value = int.from_bytes(
                layout.content[offset : offset + thunk_size], "little"
            )

        import_dir.rva = layout.directory_rva
        import_dir.size = layout.directory_size
        if self._directories.has(DataDirectoryType.BOUND_IMPORT):
            self._directories.get(DataDirectoryType.BOUND_IMPORT).clear()

    def _commit_imports(self, rollback) -> None:
        """Lay out imports; on failure undo the model change and re-raise."""
        try:
            self._apply_import_layout()
        except Exception:
            rollback()
            raise
        self._import_state = EditState.MODIFIED
        self._bump_generation()

    def _require_directory(self, kind: DataDirectoryType) -> None:
        """Reject an edit that needs a slot the directory table does not have."""
        if not self._directories.has(kind):
            raise NotFoundError(
                f"Cannot edit {kind.name}: the data directory table has only "
                f"{len(self._directories)} entries"
            )

    def _validate_import_name(self, name: str, what: str) -> None:
        if not name or not name.isascii() or "\x00" in name:
            raise ValueError(f"Invalid {what} name: {name!r}")

    def add_library(self, name: str) -> Import:
        """Import library name; returns the existing entry if already imported."""
        self._check_editable()
        self._validate_import_name(name, "library")
        self._require_directory(DataDirectoryType.IMPORT_TABLE)
        existing = find_import(self._imports, name)
        if existing is not None:
            return existing

        imp = Import(name=name)
        self._imports.append(imp)
        self._commit_imports(lambda: self._imports.remove(imp))
        logger.debug("Added library %s", name)
        return imp

    def add_import_function(self, library: str, function: str) -> ImportEntry:
        """Import function from library, adding the library if needed.

        The new IAT slot lives in the generated import section and its RVA is
        translatable as soon as this returns.
        """
        self._check_editable()
        self._validate_import_name(library, "library")
        self._validate_import_name(function, "function")
        self._require_directory(DataDirectoryType.IMPORT_TABLE)

        imp = find_import(self._imports, library)
        created = imp is None
        if created:
            imp = Import(name=library)
            self._imports.append(imp)
        else:
            existing = imp.get_entry(function)
            if existing is not None:
                return existing

        entry = ImportEntry(name=function)
        imp._append_entry(entry)

        def rollback():
            imp._remove_entry(entry)
            if created:
                self._imports.remove(imp)

        self._commit_imports(rollback)
        logger.debug("Added import %s!%s at IAT RVA 0x%x", library, function, entry.iat_rva)
        return entry

    def predict_function_rva(self, library: str, function: str) -> int:
        """IAT slot RVA function has, or would get if added now."""
        imp = find_import(self._imports, library)
        if imp is not None:
            entry = imp.get_entry(function)
            if entry is not None:
                return entry.iat_rva

        imports = copy.deepcopy(self._imports)
        candidate = find_import(imports, library)
        if candidate is None:
            candidate = Import(name=library)
            imports.append(candidate)
        candidate._append_entry(ImportEntry(name=function))
        layout, _ = self._plan_imports(imports)
        lib_index = next(i for i, imp in enumerate(imports) if imp is candidate)
        key = (lib_index, len(candidate.entries) - 1)
        return layout.iat_slots[key]

    def remove_library(self, name: str) -> None:
        """Remove an imported library.

        Raises:
            NotFoundError: If the library is not imported
        """
        self._check_editable()
        imp = find_import(self._imports, name)
        if imp is None:
            raise NotFoundError(f"Library not imported: {name}")
        index = self._imports.index(imp)
        self._imports.remove(imp)
        if self._import_section is not None:
            self._commit_imports(lambda: self._imports.insert(index, imp))
        else:
            self._import_state = EditState.MODIFIED
            self._bump_generation()
        logger.debug("Removed library %s", name)

    def remove_all_libraries(self) -> None:
        self._check_editable()
        self._imports.clear()
        self._import_state = EditState.MODIFIED
        self._bump_generation()

    # =========================================================================
    # Relocation Operations
    # =========================================================================

    def add_relocation(self, relocation: Relocation) -> Relocation:
        """Append a relocation block.

        Raises:
            ValueError: Page RVA not 4KB aligned, or an entry outside any section
            NotFoundError: The data directory table has no relocation slot
        """
        self._check_editable()
        self._require_directory(DataDirectoryType.BASE_RELOCATION_TABLE)
        if relocation.virtual_address % 0x1000:
            raise ValueError(
                f"Relocation page RVA 0x{relocation.virtual_address:x} is not 4KB aligned"
            )
        for entry in relocation.entries:
            entry.validate()
            if entry.is_absolute:
                continue
            target = relocation.virtual_address + entry.position
            if self._sections.find_by_rva(target) is None:
                raise ValueError(f"Relocation target RVA 0x{target:x} not in any section")

        self._relocations.append(relocation)
        if self._relocation_state is EditState.UNCHANGED:
            self._relocation_state = EditState.MODIFIED
        self._bump_generation()
        return relocation

    def remove_all_relocations(self) -> None:
        self._check_editable()
        self._relocations.clear()
        self._relocation_state = EditState.REMOVED
        self._bump_generation()

    # =========================================================================
    # Output
    # =========================================================================

    def build(self, config=None) -> bytes:
        from .builder import Builder

        return Builder(self, config).build()

    def write(self, path: Path | str, config=None) -> None:
        """Build the image and write it to path.

        Raises:
            OSError: If the path cannot be written
        """
        Path(path).write_bytes(self.build(config))

    def __str__(self) -> str:
        opt_hdr = self.optional_header
        lines = [
            f"{self.name or '<unnamed>'}: {self.pe_type.name} machine=0x{self.header.Machine:04x}",
            f"  ImageBase 0x{opt_hdr.ImageBase:x}  EntryPoint 0x{self.entrypoint:x}",
            f"  SizeOfImage 0x{opt_hdr.SizeOfImage:x}  SizeOfHeaders 0x{opt_hdr.SizeOfHeaders:x}",
            f"Sections ({len(self._sections)}):",
        ]
        lines.extend(f"  {section}" for section in self._sections)
        lines.append("Data directories:")
        lines.extend(f"  {d}" for d in self._directories if d.is_present)
        if self._imports:
            lines.append(f"Imports ({len(self._imports)}):")
            for imp in self._imports:
                lines.append(f"  {imp}")
                lines.extend(f"    {entry}" for entry in imp.entries)
        if self._exports is not None:
            lines.append(f"Exports: {self._exports}")
        if self._relocations:
            lines.append(f"Relocations: {len(self._relocations)} blocks")
        if self._tls is not None:
            lines.append(str(self._tls))
        for entry in self._debug:
            lines.append(f"Debug: {entry}")
        if self._signature is not None:
            lines.append(f"Signature: {len(self._signature.certificates)} certificate(s)")
        if self._overlay:
            lines.append(f"Overlay: {len(self._overlay)} bytes")
        for anomaly in self.anomalies:
            lines.append(f"Anomaly: {anomaly}")
        return "\n".join(lines)
