"""
PE layout verification utilities.

The LayoutVerifier class provides structural validation for a Binary,
catching layouts that would not load or that tools would reject. The
Builder runs it before serializing and refuses layouts with errors.

This includes both internal structural checks and external tool invocation.
"""

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .binary import Binary
from .parser import Parser
from .types import is_power_of_two, round_up_to_alignment


@dataclass
class VerificationResult:
    """Result of binary verification.

    Collects errors and warnings from the structural checks and external
    tools in a consistent format.
    """

    passed: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, msg: str) -> None:
        """Add an error (verification failed)."""
        self.errors.append(msg)
        self.passed = False

    def add_warning(self, msg: str) -> None:
        """Add a warning (verification passed but with concerns)."""
        self.warnings.append(msg)

    def merge(self, other: "VerificationResult") -> None:
        """Merge another result into this one."""
        if not other.passed:
            self.passed = False
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def __str__(self) -> str:
        """Human-readable summary."""
        lines = ["Verification PASSED" if self.passed else "Verification FAILED"]

        if self.errors:
            lines.append(f"Errors ({len(self.errors)}):")
            lines.extend(f"  - {e}" for e in self.errors)

        if self.warnings:
            lines.append(f"Warnings ({len(self.warnings)}):")
            lines.extend(f"  - {w}" for w in self.warnings)

        return "\n".join(lines)


class LayoutVerifier:
    """Structural checks over a Binary.

    Usage:
        result = LayoutVerifier.verify(Path("foo.dll"))
        if not result.passed:
            print(result)
    """

    def __init__(self, binary: Binary, file_size: int | None = None):
        """Initialize with a Binary.

        Args:
            binary: Binary to check
            file_size: Size of the file the binary was read from, enabling
                       the raw-data-in-bounds check
        """
        self._binary = binary
        self._file_size = file_size

    @classmethod
    def verify(cls, path: Path) -> VerificationResult:
        """Verify a PE file on disk."""
        return cls.verify_data(Path(path).read_bytes(), name=Path(path).name)

    @classmethod
    def verify_data(cls, data: bytes | bytearray, name: str = "") -> VerificationResult:
        """Verify PE data in memory."""
        binary = Parser.parse(data, name)
        result = cls(binary, file_size=len(data)).run_all_checks()
        for anomaly in binary.anomalies:
            result.add_warning(anomaly)
        return result

    def run_all_checks(self) -> VerificationResult:
        """Run all internal structural checks."""
        result = VerificationResult()

        checks: list[Callable[[], VerificationResult]] = [
            self.check_section_order,
            self.check_no_overlapping_sections,
            self.check_section_alignment,
            self.check_header_room,
            self.check_section_offsets_in_bounds,
            self.check_data_directory_bounds,
            self.check_size_of_image,
            self.check_file_alignment,
        ]

        for check in checks:
            result.merge(check())

        return result

    # =========================================================================
    # Structural Checks
    # =========================================================================

    def check_section_order(self) -> VerificationResult:
        """Sections must be sorted by VirtualAddress."""
        result = VerificationResult()
        sections = self._binary.sections
        for prev, curr in zip(sections, sections[1:]):
            if curr.virtual_address < prev.virtual_address:
                result.add_error(
                    f"Section {curr.name} at RVA 0x{curr.virtual_address:x} follows "
                    f"{prev.name} at RVA 0x{prev.virtual_address:x}"
                )
        return result

    def check_no_overlapping_sections(self) -> VerificationResult:
        """Check that no two sections overlap in memory or in the file."""
        result = VerificationResult()
        sections = self._binary.sections

        for i, sect1 in enumerate(sections):
            for sect2 in sections[i + 1 :]:
                start1, end1 = sect1.virtual_address, sect1.end_rva
                start2, end2 = sect2.virtual_address, sect2.end_rva
                if start1 < end2 and start2 < end1:
                    result.add_error(
                        f"Sections {sect1.name} and {sect2.name} have overlapping "
                        f"virtual ranges: [{start1:#x}, {end1:#x}) and [{start2:#x}, {end2:#x})"
                    )

                if sect1.raw_size == 0 or sect2.raw_size == 0:
                    continue
                start1, end1 = sect1.raw_offset, sect1.end_raw_offset
                start2, end2 = sect2.raw_offset, sect2.end_raw_offset
                if start1 < end2 and start2 < end1:
                    result.add_error(
                        f"Sections {sect1.name} and {sect2.name} have overlapping "
                        f"file ranges: [{start1:#x}, {end1:#x}) and [{start2:#x}, {end2:#x})"
                    )

        return result

    def check_section_alignment(self) -> VerificationResult:
        """Check section alignment constraints.

        - PointerToRawData should be aligned to FileAlignment
        - VirtualAddress should be aligned to SectionAlignment
        """
        result = VerificationResult()

        file_align = self._binary.file_alignment
        sect_align = self._binary.section_alignment
        if not file_align or not sect_align:
            return result

        for section in self._binary.sections:
            if section.raw_size > 0 and section.raw_offset % file_align != 0:
                result.add_warning(
                    f"Section {section.name} PointerToRawData 0x{section.raw_offset:x} "
                    f"not aligned to FileAlignment 0x{file_align:x}"
                )

            if section.virtual_address % sect_align != 0:
                result.add_warning(
                    f"Section {section.name} VirtualAddress 0x{section.virtual_address:x} "
                    f"not aligned to SectionAlignment 0x{sect_align:x}"
                )

        return result

    def check_header_room(self) -> VerificationResult:
        """The section table must end before any section's raw data."""
        result = VerificationResult()
        table_end = self._binary.sizeof_headers
        first_raw = self._binary.section_table.first_raw_offset()
        if first_raw is not None and table_end > first_raw:
            result.add_error(
                f"Section table ends at 0x{table_end:x}, past the first section "
                f"data at 0x{first_raw:x}"
            )
        first_va = self._binary.section_table.first_virtual_address()
        if first_va is not None and table_end > first_va:
            result.add_error(
                f"Section table ends at 0x{table_end:x}, past the first section "
                f"RVA 0x{first_va:x}"
            )
        return result

    def check_section_offsets_in_bounds(self) -> VerificationResult:
        """Check that section raw data is within file bounds."""
        result = VerificationResult()
        if self._file_size is None:
            return result

        for section in self._binary.sections:
            if section.raw_size == 0:
                continue

            if section.end_raw_offset > self._file_size:
                result.add_error(
                    f"Section {section.name} raw data extends beyond file: "
                    f"ends at 0x{section.end_raw_offset:x}, file size is "
                    f"0x{self._file_size:x}"
                )

        return result

    def check_data_directory_bounds(self) -> VerificationResult:
        """Check that data directories point into a section or the headers."""
        result = VerificationResult()
        binary = self._binary
        header_end = binary.section_table.first_virtual_address()
        if header_end is None:
            header_end = binary.optional_header.SizeOfHeaders

        for directory in binary.data_directories:
            if not directory.is_present or directory.rva == 0:
                continue
            if directory.holds_file_offset:
                if directory.rva % 8:
                    result.add_warning(
                        f"Certificate table offset 0x{directory.rva:x} is not 8-byte aligned"
                    )
                continue

            name = getattr(directory.type, "name", str(directory.type))
            section = binary.section_table.find_by_rva(directory.rva)
            if section is None and directory.rva >= header_end:
                result.add_error(
                    f"{name} directory RVA 0x{directory.rva:x} not in any section"
                )
                continue

            end_rva = directory.rva + directory.size
            limit = section.end_rva if section is not None else header_end
            if end_rva > limit:
                result.add_warning(
                    f"{name} directory end RVA 0x{end_rva:x} extends beyond section"
                )

        return result

    def check_size_of_image(self) -> VerificationResult:
        """Check SizeOfImage covers all sections."""
        result = VerificationResult()

        size_of_image = self._binary.optional_header.SizeOfImage
        expected_min = round_up_to_alignment(
            self._binary.section_table.max_virtual_end(), self._binary.section_alignment
        )
        if size_of_image < expected_min:
            result.add_error(
                f"SizeOfImage 0x{size_of_image:x} is smaller than "
                f"required 0x{expected_min:x} to cover all sections"
            )

        return result

    def check_file_alignment(self) -> VerificationResult:
        """Check FileAlignment is a power of 2 between 512 and 64K."""
        result = VerificationResult()

        file_align = self._binary.file_alignment

        if not is_power_of_two(file_align):
            result.add_error(f"FileAlignment 0x{file_align:x} is not a power of 2")
        elif file_align < 512:
            result.add_warning(
                f"FileAlignment 0x{file_align:x} is smaller than standard 512"
            )
        elif file_align > 65536:
            result.add_warning(
                f"FileAlignment 0x{file_align:x} is larger than standard 64K"
            )

        return result


# =============================================================================
# External Tool Verification
# =============================================================================


def verify_with_llvm_objdump(
    path: Path,
    llvm_objdump: Path | str = "llvm-objdump",
) -> VerificationResult:
    """Run llvm-objdump and check for warnings/errors.

    Args:
        path: Path to PE binary
        llvm_objdump: Path to llvm-objdump executable

    Returns:
        VerificationResult
    """
    result = VerificationResult()

    try:
        proc = subprocess.run(
            [str(llvm_objdump), "-h", "-p", str(path)],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        result.add_warning("llvm-objdump not found")
        return result

    output = proc.stdout + proc.stderr
    warning_patterns = ["corrupt", "invalid", "warning:", "error:", "truncated"]

    for line in output.splitlines():
        lowered = line.lower()
        if any(pattern in lowered for pattern in warning_patterns):
            result.add_error(f"llvm-objdump: {line.strip()}")

    if proc.returncode != 0:
        result.add_error(f"llvm-objdump exited with code {proc.returncode}")

    return result


def verify_with_dumpbin(path: Path) -> VerificationResult:
    """Run dumpbin (Windows SDK) and check for warnings/errors."""
    result = VerificationResult()

    try:
        proc = subprocess.run(
            ["dumpbin", "/headers", "/imports", str(path)],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        result.add_warning("dumpbin not found (Windows SDK tool)")
        return result

    if proc.returncode != 0:
        result.add_error(f"dumpbin exited with code {proc.returncode}")

    if "fatal error" in (proc.stdout + proc.stderr).lower():
        result.add_error("dumpbin reported fatal error")

    return result


def verify_all(
    path: Path,
    llvm_objdump: Path | str = "llvm-objdump",
) -> VerificationResult:
    """Run all verification checks on a PE binary.

    Args:
        path: Path to PE binary
        llvm_objdump: Path to llvm-objdump executable

    Returns:
        Combined VerificationResult
    """
    result = VerificationResult()

    # Internal structural checks
    result.merge(LayoutVerifier.verify(path))

    # External tool checks
    result.merge(verify_with_llvm_objdump(path, llvm_objdump))

    # dumpbin is Windows-only (part of MSVC/Windows SDK)
    if sys.platform == "win32":
        result.merge(verify_with_dumpbin(path))

    return result
