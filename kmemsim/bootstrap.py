"""Bump allocator used before the page-level physical memory manager exists."""

from __future__ import annotations

BOOTSTRAP_PAGE_SIZE = 0x1000
DEFAULT_ALIGNMENT = 8


class BootstrapExhaustedError(MemoryError):
    """Raised when the bootstrap region cannot satisfy a request."""


class BootstrapAllocator:
    """Hands out aligned addresses from a fixed region; nothing is ever freed."""

    def __init__(self, start: int, end: int) -> None:
        start = (start + BOOTSTRAP_PAGE_SIZE - 1) & ~(BOOTSTRAP_PAGE_SIZE - 1)
        self.start = start
        self.end = end
        self._current = start
        self._used = 0

    def alloc(self, size: int, alignment: int = DEFAULT_ALIGNMENT) -> int:
        """Return the address of a fresh block of ``size`` bytes."""
        if size <= 0:
            raise ValueError("bootstrap allocation size must be positive")
        if alignment == 0:
            alignment = DEFAULT_ALIGNMENT
        if alignment < 0 or alignment & (alignment - 1):
            raise ValueError("alignment must be a power of two")

        aligned = (self._current + alignment - 1) & ~(alignment - 1)
        if aligned + size > self.end:
            available = max(self.end - aligned, 0)
            raise BootstrapExhaustedError(
                f"bootstrap allocator out of memory: requested {size:#x} bytes, "
                f"available {available:#x} bytes"
            )

        self._current = aligned + size
        self._used += size
        return aligned

    def current(self) -> int:
        """Address at which the next allocation search begins."""
        return self._current

    def used(self) -> int:
        """Total bytes handed out, not counting alignment padding."""
        return self._used

    def __repr__(self) -> str:
        return (
            f"BootstrapAllocator(start={self.start:#x}, end={self.end:#x}, "
            f"current={self._current:#x}, used={self._used:#x})"
        )