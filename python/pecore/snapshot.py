"""
Snapshot export: a compact msgpack summary of a Binary.

The summary captures the layout and the decoded directories in plain
types (dicts, lists, ints, strings), so snapshots taken before and after
an edit can be stored and compared without the original files.
"""

import logging
from typing import Any

import msgpack

from .binary import Binary
from .directories import DataDirectoryType

logger = logging.getLogger(__name__)

# Bumped when the layout of the summary dict changes
SNAPSHOT_VERSION = 1


def _directory_name(kind) -> str:
    return kind.name if isinstance(kind, DataDirectoryType) else f"DIRECTORY_{kind}"


def binary_summary(binary: Binary) -> dict[str, Any]:
    """Summarize a Binary as plain msgpack-compatible types."""
    opt_hdr = binary.optional_header
    summary: dict[str, Any] = {
        "version": SNAPSHOT_VERSION,
        "name": binary.name,
        "format": binary.format,
        "pe_type": binary.pe_type.name,
        "machine": binary.header.Machine,
        "characteristics": binary.header.Characteristics,
        "dll_characteristics": opt_hdr.DllCharacteristics,
        "image_base": binary.image_base,
        "entrypoint": binary.entrypoint,
        "size_of_image": opt_hdr.SizeOfImage,
        "size_of_headers": opt_hdr.SizeOfHeaders,
        "checksum": opt_hdr.CheckSum,
        "sections": [
            {
                "name": s.name,
                "virtual_address": s.virtual_address,
                "virtual_size": s.virtual_size,
                "raw_offset": s.raw_offset,
                "raw_size": s.raw_size,
                "characteristics": s.characteristics,
            }
            for s in binary.sections
        ],
        "directories": {
            _directory_name(d.type): [d.rva, d.size]
            for d in binary.data_directories
            if d.is_present
        },
        "imports": [
            {
                "name": imp.name,
                "functions": [
                    {"name": e.name, "ordinal": e.ordinal, "iat_rva": e.iat_rva}
                    for e in imp.entries
                ],
            }
            for imp in binary.imports
        ],
        "exports": None,
        "relocations": [
            {"page": r.virtual_address, "entries": len(r.entries)}
            for r in binary.relocations
        ],
        "tls": None,
        "debug": [
            {
                "type": d.type,
                "pdb": d.code_view.filename if d.code_view is not None else None,
            }
            for d in binary.debug
        ],
        "certificates": len(binary.signature.certificates) if binary.has_signature() else 0,
        "symbols": len(binary.symbols),
        "overlay_size": len(binary.overlay),
        "anomalies": list(binary.anomalies),
    }

    if binary.has_exports():
        export = binary.exports
        summary["exports"] = {
            "name": export.name,
            "ordinal_base": export.ordinal_base,
            "entries": [
                {
                    "ordinal": e.ordinal,
                    "address": e.address,
                    "name": e.name,
                    "forward": e.forward_name,
                }
                for e in export.entries
            ],
        }

    if binary.has_tls():
        tls = binary.tls
        summary["tls"] = {
            "address_of_index": tls.address_of_index,
            "address_of_callbacks": tls.address_of_callbacks,
            "callbacks": list(tls.callbacks),
        }

    return summary


def pack_summary(binary: Binary) -> bytes:
    """Serialize binary_summary(binary) with msgpack."""
    packed = msgpack.packb(binary_summary(binary), use_bin_type=True)
    logger.debug("Packed summary of %s: %d bytes", binary.name or "binary", len(packed))
    return packed


def unpack_summary(data: bytes) -> dict[str, Any]:
    """Decode a summary produced by pack_summary.

    Raises:
        ValueError: If data is not a msgpack summary
    """
    try:
        summary = msgpack.unpackb(data, raw=False, strict_map_key=True)
    except (msgpack.exceptions.UnpackException, ValueError) as e:
        raise ValueError(f"Failed to parse summary data: {e}") from e

    if not isinstance(summary, dict):
        raise ValueError(
            f"Invalid summary format: expected dict, got {type(summary).__name__}"
        )
    if summary.get("version") != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported summary version: {summary.get('version')!r}")
    return summary
