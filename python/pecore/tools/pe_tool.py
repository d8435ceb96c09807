#!/usr/bin/env python3
"""
PE inspection and editing CLI tool.

Usage:
    python -m pecore.tools.pe_tool info <binary>
    python -m pecore.tools.pe_tool verify <binary> [--external] [--verbose]
    python -m pecore.tools.pe_tool add-section <input> <output> --name .extra --content-file data.bin
    python -m pecore.tools.pe_tool add-import <input> <output> --library KERNEL32.DLL --function Sleep
    python -m pecore.tools.pe_tool remove-library <input> <output> --library USER32.dll
    python -m pecore.tools.pe_tool strip-relocations <input> <output>
    python -m pecore.tools.pe_tool summary <input> <output.msgpack>
"""

import argparse
import logging
import sys
from pathlib import Path

import pecore
from pecore.builder import BuildConfig
from pecore.errors import PEError
from pecore.section import Section, SectionType
from pecore.snapshot import pack_summary
from pecore.verify import (
    LayoutVerifier,
    VerificationResult,
    verify_with_dumpbin,
    verify_with_llvm_objdump,
)


def _print_result(label: str, result: VerificationResult, verbose: bool) -> None:
    print(f"  {label}: ", end="")
    print("PASS" if result.passed else "FAIL")
    for e in result.errors:
        print(f"    ERROR: {e}")
    if verbose:
        for w in result.warnings:
            print(f"    WARN: {w}")


def verify_binary(
    binary: Path,
    verbose: bool = False,
    external: bool = False,
    llvm_objdump: str = "llvm-objdump",
) -> VerificationResult:
    """Run verification checks on a binary and print a report.

    Args:
        binary: Path to PE binary
        verbose: Whether to show warnings
        external: Also run llvm-objdump (and dumpbin on Windows)
        llvm_objdump: llvm-objdump executable

    Returns:
        Combined VerificationResult
    """
    print(f"Verifying: {binary}")
    print("-" * 60)

    result = VerificationResult()
    internal = LayoutVerifier.verify(binary)
    result.merge(internal)
    _print_result("internal", internal, verbose)

    if external:
        tools = [("llvm-objdump", lambda: verify_with_llvm_objdump(binary, llvm_objdump))]
        if sys.platform == "win32":
            tools.append(("dumpbin", lambda: verify_with_dumpbin(binary)))
        for name, func in tools:
            tool_result = func()
            result.merge(tool_result)
            _print_result(name, tool_result, verbose)

    print("-" * 60)
    overall = "PASSED" if result.passed else "FAILED"
    print(f"Overall: {overall}")
    return result


# =============================================================================
# Commands
# =============================================================================


def _build_config(args) -> BuildConfig:
    return BuildConfig(recompute_checksum=not args.keep_checksum)


def cmd_info(args) -> int:
    print(pecore.parse(args.binary))
    return 0


def cmd_verify(args) -> int:
    result = verify_binary(args.binary, args.verbose, args.external, args.llvm_objdump)
    return 0 if result.passed else 1


def cmd_add_section(args) -> int:
    binary = pecore.parse(args.input)
    content = args.content_file.read_bytes()
    handle = binary.add_section(
        Section(name=args.name, content=content, virtual_size=args.virtual_size),
        SectionType[args.type.upper()],
    )
    print(
        f"Added section {handle.name} at RVA 0x{handle.virtual_address:x}, "
        f"file offset 0x{handle.raw_offset:x}"
    )
    binary.write(args.output, _build_config(args))
    return 0


def cmd_add_import(args) -> int:
    binary = pecore.parse(args.input)
    for function in args.function:
        entry = binary.add_import_function(args.library, function)
        print(f"{args.library}!{function}: IAT slot at RVA 0x{entry.iat_rva:x}")
    binary.write(args.output, _build_config(args))
    return 0


def cmd_remove_library(args) -> int:
    binary = pecore.parse(args.input)
    binary.remove_library(args.library)
    binary.write(args.output, _build_config(args))
    return 0


def cmd_strip_relocations(args) -> int:
    binary = pecore.parse(args.input)
    blocks = len(binary.relocations)
    binary.remove_all_relocations()
    binary.write(args.output, _build_config(args))
    print(f"Removed {blocks} relocation blocks")
    return 0


def cmd_summary(args) -> int:
    binary = pecore.parse(args.input)
    data = pack_summary(binary)
    args.output.write_bytes(data)
    print(f"Wrote {len(data)} bytes to {args.output}")
    return 0


def _add_edit_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", type=Path, help="Input PE binary")
    parser.add_argument("output", type=Path, help="Output path")
    parser.add_argument(
        "--keep-checksum",
        action="store_true",
        help="Do not recompute the optional header CheckSum",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pecore",
        description="Inspect and edit PE (Windows Portable Executable) binaries",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose output including warnings and debug logging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("info", help="Print headers, sections and directories")
    p.add_argument("binary", type=Path, help="Path to PE binary")
    p.set_defaults(func=cmd_info)

    p = subparsers.add_parser("verify", help="Check structural integrity")
    p.add_argument("binary", type=Path, help="Path to PE binary")
    p.add_argument(
        "--external",
        action="store_true",
        help="Also run llvm-objdump (and dumpbin on Windows)",
    )
    p.add_argument("--llvm-objdump", default="llvm-objdump", help="llvm-objdump executable")
    p.set_defaults(func=cmd_verify)

    p = subparsers.add_parser("add-section", help="Append a section")
    _add_edit_arguments(p)
    p.add_argument("--name", required=True, help="Section name (at most 8 bytes)")
    p.add_argument(
        "--content-file", type=Path, required=True, help="File holding the section content"
    )
    p.add_argument(
        "--type",
        default="data",
        choices=[t.value for t in SectionType],
        help="Section purpose, selects default characteristics",
    )
    p.add_argument(
        "--virtual-size",
        type=lambda s: int(s, 0),
        default=0,
        help="Virtual size (default: content length)",
    )
    p.set_defaults(func=cmd_add_section)

    p = subparsers.add_parser("add-import", help="Import functions from a library")
    _add_edit_arguments(p)
    p.add_argument("--library", required=True, help="DLL name")
    p.add_argument(
        "--function", required=True, action="append", help="Function name (repeatable)"
    )
    p.set_defaults(func=cmd_add_import)

    p = subparsers.add_parser("remove-library", help="Drop an imported library")
    _add_edit_arguments(p)
    p.add_argument("--library", required=True, help="DLL name")
    p.set_defaults(func=cmd_remove_library)

    p = subparsers.add_parser("strip-relocations", help="Remove all base relocations")
    _add_edit_arguments(p)
    p.set_defaults(func=cmd_strip_relocations)

    p = subparsers.add_parser("summary", help="Write a msgpack summary of the binary")
    p.add_argument("input", type=Path, help="Input PE binary")
    p.add_argument("output", type=Path, help="Output msgpack file")
    p.set_defaults(func=cmd_summary)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except (PEError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
