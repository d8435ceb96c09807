"""PE image checksum, as computed by the Windows imagehlp CheckSumMappedFile."""

import struct

from .types import OPTIONAL_HEADER_CHECKSUM_OFFSET


def compute_checksum(data: bytes | bytearray, optional_header_offset: int) -> int:
    """Compute the CheckSum field value for a complete image.

    The image is summed as little-endian dwords (zero padded to a multiple
    of four), skipping the CheckSum field itself, with carries folded back
    in; the result is folded to 16 bits and the file length added.

    Args:
        data: Complete file contents
        optional_header_offset: File offset of the optional header
    """
    checksum_offset = optional_header_offset + OPTIONAL_HEADER_CHECKSUM_OFFSET
    remainder = len(data) % 4
    padded = bytes(data) + b"\x00" * ((4 - remainder) % 4)

    checksum = 0
    for index, (dword,) in enumerate(struct.iter_unpack("<I", padded)):
        if index * 4 == checksum_offset:
            continue
        checksum = (checksum & 0xFFFFFFFF) + dword + (checksum >> 32)
        if checksum > 0xFFFFFFFF:
            checksum = (checksum & 0xFFFFFFFF) + (checksum >> 32)

    checksum = (checksum & 0xFFFF) + (checksum >> 16)
    checksum = checksum + (checksum >> 16)
    checksum = checksum & 0xFFFF
    return (checksum + len(data)) & 0xFFFFFFFF
