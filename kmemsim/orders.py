"""Page-order arithmetic shared by the buddy allocator."""

from __future__ import annotations

from kmemsim.pmm import PAGE_SHIFT, PAGE_SIZE

PAGE_ALLOC_MAX_ORDER = 12
ORDER_TOO_LARGE = PAGE_ALLOC_MAX_ORDER + 1
"""Returned by :func:`order_for_size` when no single block can hold the size."""

__all__ = [
    "ORDER_TOO_LARGE",
    "PAGE_ALLOC_MAX_ORDER",
    "PAGE_SHIFT",
    "PAGE_SIZE",
    "align_down",
    "align_up",
    "buddy_address",
    "ilog2",
    "is_power_of_two",
    "order_for_size",
    "size_for_order",
]


def is_power_of_two(n: int) -> bool:
    """True when ``n`` is a positive power of two."""
    return n > 0 and not (n & (n - 1))


def _check_alignment(align: int) -> None:
    if not is_power_of_two(align):
        raise ValueError(f"alignment must be a power of two, got {align}")


def align_down(addr: int, align: int) -> int:
    """Round ``addr`` down to a multiple of ``align``."""
    _check_alignment(align)
    return addr & ~(align - 1)


def align_up(addr: int, align: int) -> int:
    """Round ``addr`` up to a multiple of ``align``."""
    _check_alignment(align)
    return (addr + align - 1) & ~(align - 1)


def ilog2(n: int) -> int:
    """Smallest ``k`` with ``2**k >= n``; zero for ``n <= 1``."""
    if n <= 1:
        return 0
    return (n - 1).bit_length()


def order_for_size(size: int) -> int:
    """Smallest block order whose size covers ``size`` bytes.

    Sizes beyond the largest order give :data:`ORDER_TOO_LARGE`.
    """
    if size < 0:
        raise ValueError("size must not be negative")
    if size == 0:
        return 0
    pages = (size + PAGE_SIZE - 1) // PAGE_SIZE
    if pages == 1:
        return 0
    order = ilog2(pages)
    if order > PAGE_ALLOC_MAX_ORDER:
        return ORDER_TOO_LARGE
    return order


def size_for_order(order: int) -> int:
    """Number of bytes in a block of the given order."""
    if not 0 <= order <= PAGE_ALLOC_MAX_ORDER:
        raise ValueError(
            f"order must be between 0 and {PAGE_ALLOC_MAX_ORDER}, got {order}"
        )
    return (1 << order) * PAGE_SIZE


def buddy_address(addr: int, order: int) -> int:
    """Address of the buddy of the block at ``addr`` with the given order."""
    if order < 0:
        raise ValueError("order must not be negative")
    return addr ^ (1 << (order + PAGE_SHIFT))