"""
Exception hierarchy for pecore.

Every error raised by the library derives from PEError, and additionally from
the builtin exception that best matches its meaning, so callers can catch
either the library type or the builtin one (e.g. ParseError is a ValueError).
"""


class PEError(Exception):
    """Base class for all pecore errors."""

    pass


class ParseError(PEError, ValueError):
    """Raised when input bytes cannot be parsed as a PE image.

    Covers bad magic values, truncated buffers and header fields that are
    inconsistent with each other.
    """

    pass


class AddressError(PEError, ValueError):
    """Raised when an address cannot be translated."""

    def __init__(self, message: str, address: int):
        super().__init__(message)
        self.address = address


class UnmappedAddressError(AddressError):
    """RVA is neither in a section nor in the header region."""

    pass


class NoFileBackingError(AddressError):
    """RVA is inside a section but past its raw data (zero-filled memory)."""

    pass


class BelowImageBaseError(AddressError):
    """Virtual address is lower than the image base."""

    pass


class NotFoundError(PEError, LookupError):
    """Raised when a named section, library or directory does not exist."""

    pass


class InvalidStateError(PEError, RuntimeError):
    """Raised when an edit is not possible in the binary's current state."""

    pass


class StaleHandleError(InvalidStateError):
    """Raised when a handle outlived the structural edit that invalidated it."""

    pass


class BuildError(PEError, RuntimeError):
    """Raised when a binary cannot be serialized."""

    pass


class InconsistentLayoutError(BuildError):
    """Raised when the layout violates PE invariants after edits."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []
