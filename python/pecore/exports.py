"""Export table model and decoder."""

from dataclasses import dataclass, field

from .byteview import ByteView
from .errors import ParseError
from .types import ExportDirectory


@dataclass
class ExportEntry:
    """One exported function.

    address is the function RVA, or for a forwarder the RVA of the
    forwarder string (forward_name holds the decoded "DLL.Function").
    """

    ordinal: int
    address: int
    name: str | None = None
    forward_name: str | None = None

    @property
    def is_forwarded(self) -> bool:
        return self.forward_name is not None

    def __str__(self) -> str:
        label = self.name or f"#{self.ordinal}"
        if self.is_forwarded:
            return f"{label} -> {self.forward_name}"
        return f"{label} @ 0x{self.address:x}"


@dataclass
class Export:
    """Decoded export directory."""

    name: str
    ordinal_base: int
    timestamp: int = 0
    major_version: int = 0
    minor_version: int = 0
    characteristics: int = 0
    entries: list[ExportEntry] = field(default_factory=list)

    def get_entry(self, name: str) -> ExportEntry | None:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def __str__(self) -> str:
        return f"{self.name} ({len(self.entries)} exports, base {self.ordinal_base})"


def parse_exports(
    view: ByteView,
    rva_to_offset,
    directory_rva: int,
    directory_size: int,
    max_exports: int,
) -> Export:
    """Decode the export directory at directory_rva.

    Ordinals without a name are reported with name None; zero entries in the
    address table (unused ordinals) are skipped.
    """
    data = view.data
    directory = ExportDirectory.from_bytes(data, rva_to_offset(directory_rva))
    if directory.NumberOfFunctions > max_exports:
        raise ParseError(
            f"Export table has {directory.NumberOfFunctions} functions, "
            f"maximum is {max_exports}"
        )
    if directory.NumberOfNames > directory.NumberOfFunctions:
        raise ParseError(
            f"Export table has more names ({directory.NumberOfNames}) than "
            f"functions ({directory.NumberOfFunctions})"
        )

    name = ""
    if directory.Name:
        name = view.cstring(rva_to_offset(directory.Name)).decode("ascii", "replace")

    addresses = []
    if directory.NumberOfFunctions:
        functions_offset = rva_to_offset(directory.AddressOfFunctions)
        addresses = list(
            view.unpack(
                f"<{directory.NumberOfFunctions}I", functions_offset, "export address table"
            )
        )

    names_by_index: dict[int, str] = {}
    if directory.NumberOfNames:
        count = directory.NumberOfNames
        name_rvas = view.unpack(
            f"<{count}I", rva_to_offset(directory.AddressOfNames), "export name table"
        )
        ordinals = view.unpack(
            f"<{count}H",
            rva_to_offset(directory.AddressOfNameOrdinals),
            "export ordinal table",
        )
        for name_rva, index in zip(name_rvas, ordinals):
            if index >= len(addresses):
                raise ParseError(f"Export name ordinal {index} out of range")
            names_by_index[index] = view.cstring(rva_to_offset(name_rva)).decode(
                "ascii", "replace"
            )

    entries = []
    directory_end = directory_rva + directory_size
    for index, address in enumerate(addresses):
        if address == 0:
            continue
        entry = ExportEntry(
            ordinal=directory.Base + index,
            address=address,
            name=names_by_index.get(index),
        )
        # Addresses pointing back into the export directory are forwarders
        if directory_rva <= address < directory_end:
            entry.forward_name = view.cstring(rva_to_offset(address)).decode(
                "ascii", "replace"
            )
        entries.append(entry)

    return Export(
        name=name,
        ordinal_base=directory.Base,
        timestamp=directory.TimeDateStamp,
        major_version=directory.MajorVersion,
        minor_version=directory.MinorVersion,
        characteristics=directory.Characteristics,
        entries=entries,
    )
