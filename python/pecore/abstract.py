"""Format-neutral view of an executable image."""

from typing import Protocol, Sequence, runtime_checkable


@runtime_checkable
class AbstractBinary(Protocol):
    """Capabilities shared by executable formats.

    Code that only needs these members should accept an AbstractBinary
    instead of a concrete Binary.
    """

    @property
    def format(self) -> str: ...

    @property
    def sections(self) -> Sequence: ...

    @property
    def virtual_size(self) -> int: ...

    @property
    def entrypoint(self) -> int: ...
