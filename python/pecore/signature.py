"""
Authenticode certificate table.

The certificate table is addressed by file offset, not RVA, and normally
sits in the overlay. The blobs are stored but never verified.
"""

from dataclasses import dataclass, field

from .byteview import ByteView
from .errors import ParseError
from .types import WinCertificateHeader, round_up_to_alignment


@dataclass
class Certificate:
    """One WIN_CERTIFICATE record."""

    revision: int
    certificate_type: int
    data: bytes  # Certificate blob, without the 8-byte header

    def __str__(self) -> str:
        return (
            f"revision=0x{self.revision:04x} type=0x{self.certificate_type:04x} "
            f"{len(self.data)} bytes"
        )


@dataclass
class Signature:
    """Certificate table as found in the file."""

    file_offset: int
    size: int
    certificates: list[Certificate] = field(default_factory=list)
    raw: bytes = b""


def parse_signature(
    view: ByteView,
    file_offset: int,
    size: int,
    max_certificates: int,
) -> Signature:
    """Split the certificate table into WIN_CERTIFICATE records.

    Records are 8-byte aligned within the table.
    """
    raw = view.read(file_offset, size, "certificate table")
    signature = Signature(file_offset=file_offset, size=size, raw=raw)
    cursor = 0
    while cursor + WinCertificateHeader.SIZE <= size:
        if len(signature.certificates) == max_certificates:
            raise ParseError(f"Certificate table exceeds {max_certificates} entries")
        header = WinCertificateHeader.from_bytes(raw, cursor)
        if header.Length < WinCertificateHeader.SIZE or cursor + header.Length > size:
            raise ParseError(
                f"Invalid certificate length 0x{header.Length:x} at table offset "
                f"0x{cursor:x}"
            )
        signature.certificates.append(
            Certificate(
                revision=header.Revision,
                certificate_type=header.CertificateType,
                data=raw[cursor + WinCertificateHeader.SIZE : cursor + header.Length],
            )
        )
        cursor = round_up_to_alignment(cursor + header.Length, 8)
    return signature
