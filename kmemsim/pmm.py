"""Bitmap-based physical page manager."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Optional

from kmemsim.bootstrap import BootstrapAllocator, BootstrapExhaustedError

PAGE_SHIFT = 12
PAGE_SIZE = 1 << PAGE_SHIFT

UART_BASE = 0x09000000
UART_SIZE = 0x1000

BOOTSTRAP_LIMIT = 16 * 1024 * 1024
FDT_PROBE_WINDOW = 64 * 1024
BOOTSTRAP_OVERHEAD = 4096

_FREE = 0
_USED = 1


def _page_align_up(value: int) -> int:
    return (value + PAGE_SIZE - 1) & ~(PAGE_SIZE - 1)


@dataclass(frozen=True)
class MemoryRegion:
    """A physical address range, optionally labelled."""

    base: int
    size: int
    name: str = ""

    @property
    def end(self) -> int:
        return self.base + self.size


@dataclass
class PmmStats:
    total_pages: int = 0
    free_pages: int = 0
    allocated_pages: int = 0
    reserved_pages: int = 0
    page_table_pages: int = 0


class PmmInitError(RuntimeError):
    """Raised when the physical memory manager cannot be set up."""


class PhysicalMemoryManager:
    """Tracks every page of one contiguous RAM range as free or used."""

    def __init__(self, base: int, size: int) -> None:
        if size < 0:
            raise ValueError("memory size must not be negative")
        self._start = base
        self._end = base + size
        self.total_pages = size >> PAGE_SHIFT
        self._bitmap = bytearray(self.total_pages)
        self.bitmap_size = (self.total_pages + 63) // 64 * 8
        self.bitmap_address: Optional[int] = None
        self.bootstrap: Optional[BootstrapAllocator] = None
        self.reservations: list[MemoryRegion] = []
        self._stats = PmmStats(
            total_pages=self.total_pages, free_pages=self.total_pages
        )

    def _page_of(self, addr: int) -> int:
        return (addr - self._start) >> PAGE_SHIFT

    def _addr_of(self, page: int) -> int:
        return self._start + (page << PAGE_SHIFT)

    def _in_range(self, pa: int) -> bool:
        return self._start <= pa < self._end

    def alloc_page(self) -> int:
        """Allocate the lowest free page and return its physical address."""
        page = self._bitmap.find(_FREE)
        if page < 0:
            raise MemoryError("out of physical pages")
        self._bitmap[page] = _USED
        self._stats.free_pages -= 1
        self._stats.allocated_pages += 1
        return self._addr_of(page)

    def alloc_page_table(self) -> int:
        """Allocate a page and count it as page-table memory."""
        pa = self.alloc_page()
        self._stats.page_table_pages += 1
        return pa

    def alloc_pages(self, count: int) -> int:
        """Allocate ``count`` physically contiguous pages, lowest fit first."""
        if count <= 0:
            raise ValueError("page count must be positive")
        if count == 1:
            return self.alloc_page()
        start = self._bitmap.find(bytes(count))
        if start < 0:
            raise MemoryError(f"no run of {count} contiguous free pages")
        self._bitmap[start:start + count] = bytes([_USED]) * count
        self._stats.free_pages -= count
        self._stats.allocated_pages += count
        return self._addr_of(start)

    def free_page(self, pa: int) -> bool:
        """Release one page; addresses outside RAM and free pages are ignored."""
        if not self._in_range(pa):
            return False
        page = self._page_of(pa)
        if self._bitmap[page] == _FREE:
            return False
        self._bitmap[page] = _FREE
        self._stats.free_pages += 1
        self._stats.allocated_pages -= 1
        return True

    def free_pages(self, pa: int, count: int) -> int:
        """Release ``count`` consecutive pages; return how many were in use."""
        return sum(self.free_page(pa + i * PAGE_SIZE) for i in range(count))

    def reserve_region(self, base: int, size: int, name: str = "") -> None:
        """Mark every page touched by a region as reserved."""
        self.reservations.append(MemoryRegion(base, size, name))
        start, end = base, base + size
        if end <= self._start or start >= self._end:
            return
        start = max(start, self._start)
        end = min(end, self._end)
        first = self._page_of(start)
        last = min(self._page_of(end + PAGE_SIZE - 1), self.total_pages)
        if first >= last:
            return
        newly_reserved = self._bitmap[first:last].count(_FREE)
        self._bitmap[first:last] = bytes([_USED]) * (last - first)
        self._stats.free_pages -= newly_reserved
        self._stats.reserved_pages += newly_reserved

    def reserve_page(self, pa: int) -> None:
        """Mark the page holding ``pa`` as reserved if it is free."""
        if not self._in_range(pa):
            return
        page = self._page_of(pa & ~(PAGE_SIZE - 1))
        if page < self.total_pages and self._bitmap[page] == _FREE:
            self._bitmap[page] = _USED
            self._stats.free_pages -= 1
            self._stats.reserved_pages += 1

    def is_available(self, pa: int) -> bool:
        if not self._in_range(pa):
            return False
        page = self._page_of(pa)
        return page < self.total_pages and self._bitmap[page] == _FREE

    def stats(self) -> PmmStats:
        """A snapshot of the page counters."""
        return replace(self._stats)

    def memory_start(self) -> int:
        return self._start

    def memory_end(self) -> int:
        return self._end

    def format_stats(self) -> str:
        """Human-readable summary of the manager's state."""
        s = self._stats
        mib = PAGE_SIZE / (1024 * 1024)
        lines = [
            "Physical Memory Manager Statistics:",
            "===================================",
            f"Memory Range: {self._start:#x} - {self._end:#x}",
            f"Total Pages: {s.total_pages:#x} ({int(s.total_pages * mib):#x} MB)",
            f"Free Pages:  {s.free_pages:#x} ({int(s.free_pages * mib):#x} MB)",
            f"Used Pages:  {s.allocated_pages:#x} ({int(s.allocated_pages * mib):#x} MB)",
            "",
            "Bitmap Info:",
        ]
        if self.bitmap_address is not None:
            lines.append(f"Address: {self.bitmap_address:#x}")
        lines.append(f"Size: {self.bitmap_size:#x} bytes")
        lines += ["", "Reserved Regions:", "-----------------"]
        for region in self.reservations:
            label = f"{region.name or 'Region'}:"
            lines.append(f"{label:<18}{region.base:#x} - {region.end:#x}")
        if self.bootstrap is not None:
            lines.append(
                f"{'Bootstrap usage:':<18}{self.bootstrap.current():#x} "
                f"({self.bootstrap.used():#x} bytes used)"
            )
        return "\n".join(lines)


def initialize(
    regions: Iterable[MemoryRegion],
    kernel_end: int,
    fdt: Optional[MemoryRegion],
    boot_page_table_padding: int,
    boot_page_table_size: int,
) -> PhysicalMemoryManager:
    """Lay out boot structures after the kernel and build the page manager.

    Only the first memory region is managed.
    """
    regions = list(regions)
    if not regions:
        raise PmmInitError("no memory information provided")
    mem_base, mem_size = regions[0].base, regions[0].size

    boot_pt_start = (kernel_end + boot_page_table_padding) & ~(PAGE_SIZE - 1)
    boot_pt_end = boot_pt_start + boot_page_table_size

    has_fdt = fdt is not None and fdt.size > 0
    bootstrap_start = boot_pt_end
    if has_fdt and fdt.end > bootstrap_start and fdt.base < bootstrap_start + FDT_PROBE_WINDOW:
        bootstrap_start = _page_align_up(fdt.end)
    bootstrap_start = _page_align_up(bootstrap_start)

    pages_to_manage = mem_size >> PAGE_SHIFT
    bitmap_needed = (pages_to_manage + 63) // 64 * 8
    bootstrap_size = _page_align_up(bitmap_needed + BOOTSTRAP_OVERHEAD)
    bootstrap_end = bootstrap_start + bootstrap_size

    if bootstrap_end > mem_base + BOOTSTRAP_LIMIT:
        raise PmmInitError(
            f"boot allocator would extend beyond 16MB from RAM base "
            f"(end {bootstrap_end:#x})"
        )

    bootstrap = BootstrapAllocator(bootstrap_start, bootstrap_end)
    pmm = PhysicalMemoryManager(mem_base, mem_size)
    try:
        pmm.bitmap_address = bootstrap.alloc(pmm.bitmap_size, 8)
    except (BootstrapExhaustedError, ValueError) as exc:
        raise PmmInitError("failed to allocate the page bitmap") from exc
    pmm.bootstrap = bootstrap

    pmm.reserve_region(mem_base, max(kernel_end - mem_base, 0), "Kernel")
    pmm.reserve_region(boot_pt_start, boot_page_table_size, "Boot Page Tables")
    pmm.reserve_region(bootstrap_start, bootstrap.used(), "PMM Bootstrap")
    if has_fdt:
        pmm.reserve_region(fdt.base, fdt.size, "FDT")
    pmm.reserve_region(UART_BASE, UART_SIZE, "PL011 UART")
    return pmm