import pathlib

import pytest

import pecore
from pe_test_utils import SyntheticPE, make_pe


# =============================================================================
# Synthetic images
# =============================================================================
#
# Images are generated in memory by tests/pe_test_utils.py; no binaries are
# checked in. Fixtures parameterized over the PE flavour run the same test
# against PE32 and PE32+ images.

PE_FLAVOURS = [True, False]


@pytest.fixture(params=PE_FLAVOURS, ids=lambda plus: "pe32plus" if plus else "pe32")
def pe_image(request) -> SyntheticPE:
    """Default synthetic image, once per PE flavour."""
    return make_pe(pe32_plus=request.param)


@pytest.fixture
def pe64_image() -> SyntheticPE:
    """Default PE32+ image."""
    return make_pe(pe32_plus=True)


@pytest.fixture
def pe64_binary(pe64_image: SyntheticPE) -> pecore.Binary:
    """Parsed default PE32+ image."""
    return pecore.parse(pe64_image.data, name="synth.exe")


@pytest.fixture
def full_image() -> SyntheticPE:
    """PE32+ image with symbols, an overlay and a certificate table."""
    return make_pe(
        pe32_plus=True,
        symbols=True,
        overlay=b"OVERLAY-PAYLOAD-" * 4,
        certificate=b"\x30\x82" + b"C" * 37,
    )


@pytest.fixture
def compact_image() -> SyntheticPE:
    """PE32+ image whose section table exactly fills SizeOfHeaders (0x200)."""
    return make_pe(
        pe32_plus=True,
        size_of_headers=0x200,
        relocations=False,
        symbols=True,
        overlay=b"TAIL" * 8,
        certificate=b"SIG" * 5,
    )


@pytest.fixture
def pe_file(tmp_path: pathlib.Path, pe64_image: SyntheticPE) -> pathlib.Path:
    """Default PE32+ image written to disk."""
    path = tmp_path / "synth.exe"
    path.write_bytes(pe64_image.data)
    return path
