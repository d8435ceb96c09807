"""COFF symbol table (PointerToSymbolTable) with its string table."""

from dataclasses import dataclass, field

from .byteview import ByteView
from .errors import ParseError
from .types import COFF_SYMBOL_SIZE, CoffSymbolRecord


@dataclass
class Symbol:
    """A COFF symbol record and its auxiliary records."""

    name: str
    value: int
    section_number: int
    type: int
    storage_class: int
    aux_records: list[bytes] = field(default_factory=list)

    @property
    def number_of_aux_symbols(self) -> int:
        return len(self.aux_records)

    def __str__(self) -> str:
        return (
            f"{self.name} value=0x{self.value:x} section={self.section_number} "
            f"class={self.storage_class}"
        )


def parse_symbols(
    view: ByteView,
    offset: int,
    count: int,
    max_symbols: int,
) -> list[Symbol]:
    """Decode count symbol records at a file offset.

    Names longer than 8 bytes are stored as an offset into the string table
    that immediately follows the records.
    """
    if count > max_symbols:
        raise ParseError(f"Symbol table has {count} records, maximum is {max_symbols}")
    view.check(offset, count * COFF_SYMBOL_SIZE, "COFF symbol table")
    string_table = offset + count * COFF_SYMBOL_SIZE

    symbols = []
    index = 0
    while index < count:
        record = CoffSymbolRecord.from_bytes(view.data, offset + index * COFF_SYMBOL_SIZE)
        if record.Name[:4] == b"\x00\x00\x00\x00":
            str_offset = int.from_bytes(record.Name[4:], "little")
            name = view.cstring(string_table + str_offset).decode("utf-8", "replace")
        else:
            name = record.Name.split(b"\x00", 1)[0].decode("utf-8", "replace")

        aux_start = index + 1
        aux_end = min(aux_start + record.NumberOfAuxSymbols, count)
        aux = [
            view.read(offset + i * COFF_SYMBOL_SIZE, COFF_SYMBOL_SIZE, "aux symbol")
            for i in range(aux_start, aux_end)
        ]
        symbols.append(
            Symbol(
                name=name,
                value=record.Value,
                section_number=record.SectionNumber,
                type=record.Type,
                storage_class=record.StorageClass,
                aux_records=aux,
            )
        )
        index = aux_end
    return symbols
