"""Thread local storage directory."""

import struct
from dataclasses import dataclass, field

from .byteview import ByteView
from .errors import AddressError, ParseError
from .types import TlsDirectory32, TlsDirectory64

# Upper bound on the template bytes copied into the model
MAX_TLS_TEMPLATE_SIZE = 0x100000


@dataclass
class TLS:
    """Decoded TLS directory. All addresses are VAs, as stored on disk."""

    start_address_of_raw_data: int = 0
    end_address_of_raw_data: int = 0
    address_of_index: int = 0
    address_of_callbacks: int = 0
    size_of_zero_fill: int = 0
    characteristics: int = 0
    callbacks: list[int] = field(default_factory=list)
    data_template: bytes = b""

    def to_struct(self, pe32_plus: bool) -> TlsDirectory32 | TlsDirectory64:
        cls = TlsDirectory64 if pe32_plus else TlsDirectory32
        return cls(
            StartAddressOfRawData=self.start_address_of_raw_data,
            EndAddressOfRawData=self.end_address_of_raw_data,
            AddressOfIndex=self.address_of_index,
            AddressOfCallBacks=self.address_of_callbacks,
            SizeOfZeroFill=self.size_of_zero_fill,
            Characteristics=self.characteristics,
        )

    def callbacks_bytes(self, pe32_plus: bool) -> bytes:
        """Null-terminated callback array."""
        fmt = "<Q" if pe32_plus else "<I"
        return b"".join(struct.pack(fmt, cb) for cb in [*self.callbacks, 0])

    def __str__(self) -> str:
        return (
            f"TLS raw=[0x{self.start_address_of_raw_data:x}, "
            f"0x{self.end_address_of_raw_data:x}) index=0x{self.address_of_index:x} "
            f"callbacks={[hex(cb) for cb in self.callbacks]}"
        )


def parse_tls(
    view: ByteView,
    rva_to_offset,
    va_to_offset,
    directory_rva: int,
    pe32_plus: bool,
    max_callbacks: int,
) -> TLS:
    """Decode the TLS directory, its callback array and its data template.

    The callback array and template are optional: if they cannot be
    translated the directory itself is still returned.
    """
    cls = TlsDirectory64 if pe32_plus else TlsDirectory32
    raw = cls.from_bytes(view.data, rva_to_offset(directory_rva))
    tls = TLS(
        start_address_of_raw_data=raw.StartAddressOfRawData,
        end_address_of_raw_data=raw.EndAddressOfRawData,
        address_of_index=raw.AddressOfIndex,
        address_of_callbacks=raw.AddressOfCallBacks,
        size_of_zero_fill=raw.SizeOfZeroFill,
        characteristics=raw.Characteristics,
    )

    if raw.AddressOfCallBacks:
        fmt = "<Q" if pe32_plus else "<I"
        ptr_size = struct.calcsize(fmt)
        offset = va_to_offset(raw.AddressOfCallBacks)
        for index in range(max_callbacks + 1):
            if index == max_callbacks:
                raise ParseError(f"TLS callback array exceeds {max_callbacks} entries")
            (callback,) = view.unpack(fmt, offset + index * ptr_size, "TLS callback")
            if callback == 0:
                break
            tls.callbacks.append(callback)

    start, end = raw.StartAddressOfRawData, raw.EndAddressOfRawData
    if start and end > start:
        try:
            template_offset = va_to_offset(start)
        except AddressError:
            template_offset = None
        if template_offset is not None:
            size = min(end - start, MAX_TLS_TEMPLATE_SIZE)
            tls.data_template = view.read_available(template_offset, size)
    return tls
