"""Buddy-system page allocator that carves chunks obtained from the page manager."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from kmemsim.orders import (
    ORDER_TOO_LARGE,
    PAGE_ALLOC_MAX_ORDER,
    PAGE_SHIFT,
    PAGE_SIZE,
    align_up,
    buddy_address,
    order_for_size,
)
from kmemsim.pmm import PhysicalMemoryManager

PAGE_ALLOC_INITIAL_CHUNK_SIZE = 1024 * 1024
PAGE_ALLOC_MIN_CHUNK_SIZE = 64 * 1024
PAGE_ALLOC_MEDIUM_CHUNK_SIZE = 512 * 1024
PAGE_ALLOC_MAX_CHUNK_SIZE = 64 * 1024 * 1024
PAGE_ALLOC_MEDIUM_ORDER_THRESHOLD = 4
PAGE_ALLOC_LARGE_ORDER_THRESHOLD = 8
PAGE_ALLOC_MIN_CHUNKS_TO_KEEP = 1
PAGE_ALLOC_MAX_BLOCKS_PER_CHUNK = 64

# Block records share the chunk's first page with the chunk header.
_CHUNK_HEADER_SIZE = 48
_BLOCK_RECORD_SIZE = 32
BLOCK_SLOTS_PER_CHUNK = min(
    (PAGE_SIZE - _CHUNK_HEADER_SIZE) // _BLOCK_RECORD_SIZE,
    PAGE_ALLOC_MAX_BLOCKS_PER_CHUNK,
)

# Chunks never carve blocks of the largest order; those go straight to the PMM.
_MAX_CHUNK_ORDER = max(PAGE_ALLOC_MAX_ORDER - 1, 0)
_NUM_ORDERS = PAGE_ALLOC_MAX_ORDER + 1


class PageAllocError(RuntimeError):
    """Raised when a page cannot be released."""


class DoubleFreeError(PageAllocError):
    """Raised when a block that is already free is released again."""


def _zeros() -> list[int]:
    return [0] * _NUM_ORDERS


@dataclass
class PageAllocStats:
    allocations: list[int] = field(default_factory=_zeros)
    frees: list[int] = field(default_factory=_zeros)
    current_allocated: list[int] = field(default_factory=_zeros)
    splits: list[int] = field(default_factory=_zeros)
    coalesces: list[int] = field(default_factory=_zeros)
    pmm_chunks_allocated: int = 0
    pmm_chunks_freed: int = 0


@dataclass(eq=False)
class PageBlock:
    """One slot of a chunk's block table; ``phys_addr`` is None when unused."""

    phys_addr: Optional[int] = None
    order: int = 0
    allocated: bool = False

    def _clear(self) -> None:
        self.phys_addr = None
        self.order = 0
        self.allocated = False


@dataclass(eq=False)
class PageChunk:
    """A run of pages taken from the PMM; its first page holds the metadata."""

    base: int
    phys_addr: int
    size: int
    blocks: list[PageBlock]
    allocated_blocks: int = 0

    def _covers(self, addr: int) -> bool:
        return self.phys_addr <= addr < self.phys_addr + self.size

    def _block_at(self, addr: int) -> Optional[PageBlock]:
        return next((b for b in self.blocks if b.phys_addr == addr), None)

    def _empty_slot(self) -> Optional[PageBlock]:
        return next(
            (b for b in self.blocks if b.phys_addr is None and not b.allocated), None
        )

    def _free_block(self, addr: int, order: int) -> Optional[PageBlock]:
        return next(
            (
                b
                for b in self.blocks
                if b.phys_addr == addr and b.order == order and not b.allocated
            ),
            None,
        )


class PageAllocator:
    """Power-of-two page blocks served from chunks of physical memory.

    Not thread-safe; callers serialise access themselves.
    """

    def __init__(self, pmm: PhysicalMemoryManager) -> None:
        self.pmm = pmm
        self._free_lists: list[list[PageBlock]] = [[] for _ in range(_NUM_ORDERS)]
        self._chunks: list[PageChunk] = []
        self._stats = PageAllocStats()
        self.total_pages = 0
        self.free_pages = 0
        try:
            self.add_chunk(PAGE_ALLOC_INITIAL_CHUNK_SIZE)
        except MemoryError:
            pass

    @property
    def chunks(self) -> tuple[PageChunk, ...]:
        """Chunks in search order, most recently added first."""
        return tuple(self._chunks)

    def _push_free(self, block: PageBlock, order: int) -> None:
        block.order = order
        block.allocated = False
        self._free_lists[order].append(block)

    def _unlink(self, block: PageBlock, order: int) -> None:
        try:
            self._free_lists[order].remove(block)
        except ValueError:
            pass

    def _chunk_covering(self, addr: int) -> Optional[PageChunk]:
        return next((c for c in self._chunks if c._covers(addr)), None)

    def _chunk_holding(self, block: PageBlock) -> Optional[PageChunk]:
        return next(
            (c for c in self._chunks if any(b is block for b in c.blocks)), None
        )

    @staticmethod
    def _carve(current: int, end: int) -> Optional[tuple[int, int]]:
        for order in range(_MAX_CHUNK_ORDER, -1, -1):
            block_size = PAGE_SIZE << order
            aligned = align_up(current, block_size)
            if aligned + block_size <= end and block_size <= end - current:
                return aligned, order
        return None

    def add_chunk(self, size: int) -> int:
        """Take a chunk of ``size`` bytes from the PMM and carve it into blocks.

        Returns the chunk's physical base address.
        """
        size = align_up(size, PAGE_SIZE)
        base = self.pmm.alloc_pages(size // PAGE_SIZE)
        chunk = PageChunk(
            base=base,
            phys_addr=base + PAGE_SIZE,
            size=size - PAGE_SIZE,
            blocks=[PageBlock() for _ in range(BLOCK_SLOTS_PER_CHUNK)],
        )
        end = chunk.phys_addr + chunk.size
        current = chunk.phys_addr
        for slot in chunk.blocks:
            if current >= end:
                break
            placed = self._carve(current, end)
            if placed is None:
                break
            addr, order = placed
            slot.phys_addr = addr
            self._push_free(slot, order)
            self.total_pages += 1 << order
            self.free_pages += 1 << order
            current = addr + (PAGE_SIZE << order)

        self._chunks.insert(0, chunk)
        self._stats.pmm_chunks_allocated += 1
        return base

    def _take_free_block(self, order: int) -> Optional[int]:
        for current_order in range(order, _MAX_CHUNK_ORDER + 1):
            free_list = self._free_lists[current_order]
            if not free_list:
                continue
            block = free_list.pop()
            if current_order > order:
                self.split_block(block, order)
            block.allocated = True
            chunk = self._chunk_holding(block)
            if chunk is not None:
                chunk.allocated_blocks += 1
            self.free_pages -= 1 << order
            self._stats.allocations[order] += 1
            self._stats.current_allocated[order] += 1
            return block.phys_addr
        return None

    def _grow_for(self, order: int) -> None:
        needed = 1 << (order + PAGE_SHIFT)
        if order >= PAGE_ALLOC_LARGE_ORDER_THRESHOLD:
            chunk_size = align_up(needed + PAGE_SIZE, PAGE_SIZE)
        elif order >= PAGE_ALLOC_MEDIUM_ORDER_THRESHOLD:
            chunk_size = PAGE_ALLOC_MEDIUM_CHUNK_SIZE
        else:
            chunk_size = PAGE_ALLOC_MIN_CHUNK_SIZE
        if chunk_size < needed + PAGE_SIZE:
            chunk_size = align_up(needed + PAGE_SIZE, PAGE_SIZE)

        try:
            self.add_chunk(chunk_size)
            return
        except MemoryError:
            fallback_fits = PAGE_ALLOC_MIN_CHUNK_SIZE >= needed + PAGE_SIZE
            if not (chunk_size > PAGE_ALLOC_MIN_CHUNK_SIZE and fallback_fits):
                raise
        self.add_chunk(PAGE_ALLOC_MIN_CHUNK_SIZE)

    def alloc(self, order: int) -> int:
        """Allocate a block of ``2**order`` pages and return its address."""
        if order < 0:
            raise ValueError("order must not be negative")
        if order >= PAGE_ALLOC_MAX_ORDER:
            addr = self.pmm.alloc_pages(1 << order)
            self._stats.allocations[PAGE_ALLOC_MAX_ORDER] += 1
            self._stats.current_allocated[PAGE_ALLOC_MAX_ORDER] += 1
            return addr
        while True:
            addr = self._take_free_block(order)
            if addr is not None:
                return addr
            self._grow_for(order)

    def free(self, phys_addr: int, order: int) -> None:
        """Release a block previously returned by :meth:`alloc`."""
        if phys_addr == 0:
            raise PageAllocError("cannot free a null address")
        if phys_addr & (PAGE_SIZE - 1):
            raise PageAllocError(f"misaligned address {phys_addr:#x}")
        if order < 0:
            raise ValueError("order must not be negative")

        if order >= PAGE_ALLOC_MAX_ORDER:
            self.pmm.free_pages(phys_addr, 1 << order)
            self._stats.frees[PAGE_ALLOC_MAX_ORDER] += 1
            self._stats.current_allocated[PAGE_ALLOC_MAX_ORDER] -= 1
            return

        owning = self._chunk_covering(phys_addr)
        block = None
        if owning is not None:
            block = owning._block_at(phys_addr)
            if block is None:
                block = owning._empty_slot()
                if block is not None:
                    block.phys_addr = phys_addr
                    block.order = order
                    block.allocated = True
                    owning.allocated_blocks += 1
        if block is None or owning is None:
            raise PageAllocError(f"block {phys_addr:#x} not found")
        if not block.allocated:
            raise DoubleFreeError(f"double free of block {phys_addr:#x}")

        block.allocated = False
        block.order = order
        owning.allocated_blocks -= 1
        self.free_pages += 1 << order
        self._stats.frees[order] += 1
        self._stats.current_allocated[order] -= 1

        while order < PAGE_ALLOC_MAX_ORDER:
            buddy_addr = buddy_address(block.phys_addr, order)
            if not owning._covers(buddy_addr):
                break
            buddy = owning._free_block(buddy_addr, order)
            if buddy is None:
                break
            self._unlink(buddy, order)
            merged = self.coalesce(block, buddy)
            if merged is None:
                break
            block = merged
            order = block.order

        self._push_free(block, block.order)

        if (
            owning.allocated_blocks == 0
            and len(self._chunks) > PAGE_ALLOC_MIN_CHUNKS_TO_KEEP
        ):
            self.check_empty_chunks()

    def alloc_multiple(self, num_pages: int) -> int:
        """Allocate at least ``num_pages`` pages; returns the first address."""
        if num_pages <= 0:
            raise ValueError("page count must be positive")
        order = order_for_size(num_pages * PAGE_SIZE)
        if order <= PAGE_ALLOC_MAX_ORDER:
            return self.alloc(order)

        pages_allocated = 0
        first_addr: Optional[int] = None
        while pages_allocated < num_pages:
            remaining = num_pages - pages_allocated
            chunk_order = PAGE_ALLOC_MAX_ORDER
            while chunk_order > 0 and (1 << chunk_order) > remaining:
                chunk_order -= 1
            try:
                addr = self.alloc(chunk_order)
            except MemoryError:
                if first_addr is not None:
                    self.free_multiple(first_addr, pages_allocated)
                raise
            if first_addr is None:
                first_addr = addr
            pages_allocated += 1 << chunk_order
        return first_addr

    def free_multiple(self, phys_addr: int, num_pages: int) -> None:
        """Release pages obtained from :meth:`alloc_multiple`."""
        if num_pages <= 0:
            return
        order = order_for_size(num_pages * PAGE_SIZE)
        if order <= PAGE_ALLOC_MAX_ORDER:
            self.free(phys_addr, order)
            return

        current = phys_addr
        pages_freed = 0
        while pages_freed < num_pages:
            remaining = num_pages - pages_freed
            chunk_order = PAGE_ALLOC_MAX_ORDER
            while chunk_order > 0 and (1 << chunk_order) > remaining:
                chunk_order -= 1
            self.free(current, chunk_order)
            current += (1 << chunk_order) * PAGE_SIZE
            pages_freed += 1 << chunk_order

    def find_buddy(self, block: PageBlock) -> Optional[PageBlock]:
        """The free block of the same order that can merge with ``block``."""
        if block.phys_addr is None or not 0 <= block.order <= PAGE_ALLOC_MAX_ORDER:
            return None
        buddy_addr = buddy_address(block.phys_addr, block.order)
        chunk = self._chunk_covering(buddy_addr)
        if chunk is None:
            return None
        return chunk._free_block(buddy_addr, block.order)

    def split_block(self, block: PageBlock, target_order: int) -> None:
        """Halve ``block`` down to ``target_order``, freeing each upper half."""
        if block.order <= target_order or block.order > PAGE_ALLOC_MAX_ORDER:
            return
        while block.order > target_order:
            current_order = block.order
            block.order -= 1
            buddy_addr = block.phys_addr + (1 << (block.order + PAGE_SHIFT))
            chunk = self._chunk_covering(buddy_addr)
            buddy = chunk._empty_slot() if chunk is not None else None
            if buddy is None:
                continue
            buddy.phys_addr = buddy_addr
            buddy.allocated = False
            self._push_free(buddy, block.order)
            self._stats.splits[current_order] += 1

    def coalesce(self, block1: PageBlock, block2: PageBlock) -> Optional[PageBlock]:
        """Merge two buddies into the lower one; None if they are not buddies."""
        if block1.order != block2.order or block1.order >= PAGE_ALLOC_MAX_ORDER:
            return None
        if block1.phys_addr is None or block2.phys_addr is None:
            return None
        if block1.phys_addr < block2.phys_addr:
            left, right = block1, block2
        else:
            left, right = block2, block1
        if buddy_address(left.phys_addr, left.order) != right.phys_addr:
            return None
        left.order += 1
        right._clear()
        self._stats.coalesces[left.order - 1] += 1
        return left

    def return_chunk(self, chunk: PageChunk) -> None:
        """Give a chunk's pages back to the PMM; free lists are not touched."""
        if any(c is chunk for c in self._chunks):
            self._chunks.remove(chunk)
        self._stats.pmm_chunks_freed += 1
        self.pmm.free_pages(chunk.base, (chunk.size + PAGE_SIZE) // PAGE_SIZE)

    def check_empty_chunks(self) -> None:
        """Return chunks with no allocated blocks, keeping a minimum number."""
        if len(self._chunks) <= PAGE_ALLOC_MIN_CHUNKS_TO_KEEP:
            return
        for chunk in list(self._chunks):
            if chunk.allocated_blocks != 0:
                continue
            if len(self._chunks) <= PAGE_ALLOC_MIN_CHUNKS_TO_KEEP:
                continue
            for slot in chunk.blocks:
                if slot.phys_addr is not None and not slot.allocated:
                    self._unlink(slot, slot.order)
                    self.total_pages -= 1 << slot.order
                    self.free_pages -= 1 << slot.order
            self._chunks.remove(chunk)
            self._stats.pmm_chunks_freed += 1
            self.pmm.free_pages(chunk.base, (chunk.size + PAGE_SIZE) // PAGE_SIZE)

    def stats(self) -> PageAllocStats:
        """A snapshot of the allocation counters."""
        s = self._stats
        return replace(
            s,
            allocations=list(s.allocations),
            frees=list(s.frees),
            current_allocated=list(s.current_allocated),
            splits=list(s.splits),
            coalesces=list(s.coalesces),
        )

    def free_list_counts(self) -> list[int]:
        """Number of free blocks on each order's list."""
        return [len(free_list) for free_list in self._free_lists]

    def check_integrity(self) -> list[str]:
        """Describe every inconsistency found; an empty list means none."""
        problems: list[str] = []
        for order, free_list in enumerate(self._free_lists):
            for block in free_list:
                if block.order != order:
                    problems.append(
                        f"block in order {order} list has order {block.order}"
                    )
                if block.allocated:
                    problems.append(f"allocated block in free list (order {order})")
                if block.phys_addr is None:
                    problems.append(f"empty slot in free list (order {order})")
                elif block.phys_addr & (PAGE_SIZE - 1):
                    problems.append(f"misaligned block {block.phys_addr:#x}")
        for chunk in self._chunks:
            if chunk.size == 0 or chunk.size > PAGE_ALLOC_MAX_CHUNK_SIZE:
                problems.append(f"invalid chunk size {chunk.size:#x}")
            if len(chunk.blocks) > PAGE_ALLOC_MAX_BLOCKS_PER_CHUNK:
                problems.append("too many blocks in chunk")
            problems.extend(
                f"invalid block order {b.order}"
                for b in chunk.blocks
                if b.order > PAGE_ALLOC_MAX_ORDER
            )
        return problems

    def format_stats(self) -> str:
        """Human-readable summary of the allocator's state."""
        s = self._stats
        lines = [
            "Page Allocator Statistics:",
            "========================",
            f"Total chunks: {len(self._chunks)}",
            f"Total pages: {self.total_pages}",
            f"Free pages: {self.free_pages}",
            f"Used pages: {self.total_pages - self.free_pages}",
            "",
            "Per-order statistics:",
            "Order | Pages  | Allocs | Frees | Current | Free",
            "------|--------|--------|-------|---------|-----",
        ]
        for order, free_list in enumerate(self._free_lists):
            lines.append(
                f"{order:>5} | {1 << order:>6} | {s.allocations[order]:>6} | "
                f"{s.frees[order]:>5} | {s.current_allocated[order]:>7} | "
                f"{len(free_list)}"
            )
        lines += [
            "",
            f"PMM chunks allocated: {s.pmm_chunks_allocated}",
            f"PMM chunks freed: {s.pmm_chunks_freed}",
        ]
        return "\n".join(lines)


__all__ = [
    "BLOCK_SLOTS_PER_CHUNK",
    "DoubleFreeError",
    "ORDER_TOO_LARGE",
    "PAGE_ALLOC_INITIAL_CHUNK_SIZE",
    "PAGE_ALLOC_MIN_CHUNK_SIZE",
    "PageAllocError",
    "PageAllocStats",
    "PageAllocator",
    "PageBlock",
    "PageChunk",
]