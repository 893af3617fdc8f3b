"""Hash table mapping page addresses to the slab and cache that own them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from kmemsim.pmm import PAGE_SHIFT, PAGE_SIZE

DEFAULT_INITIAL_BUCKETS = 64
_ADDR_MASK = (1 << 64) - 1

__all__ = [
    "DEFAULT_INITIAL_BUCKETS",
    "SlabHashEntry",
    "SlabLike",
    "SlabLookup",
    "slab_hash",
]


class SlabLike(Protocol):
    """What the lookup table needs to know about a slab."""

    slab_base: int
    slab_size: int
    cache: Any


def slab_hash(addr: int, mask: int) -> int:
    """Bucket index for ``addr``: page number with its bits folded, then masked."""
    addr = (addr & _ADDR_MASK) >> PAGE_SHIFT
    addr ^= addr >> 32
    addr ^= addr >> 16
    addr ^= addr >> 8
    return addr & mask


@dataclass(eq=False)
class SlabHashEntry:
    """One page of a slab, filed under the hash of that page's address."""

    page_addr: int
    start_addr: int
    end_addr: int
    cache: Any
    slab: Any

    def covers(self, addr: int) -> bool:
        return self.start_addr <= addr < self.end_addr


def _page_span(slab: SlabLike) -> tuple[int, int, int, int]:
    start_addr = slab.slab_base
    end_addr = start_addr + slab.slab_size
    start_page = start_addr & ~(PAGE_SIZE - 1)
    end_page = (end_addr - 1) & ~(PAGE_SIZE - 1)
    return start_addr, end_addr, start_page, end_page


class SlabLookup:
    """Chained hash table with one entry per page spanned by each slab.

    The table doubles its bucket count when the load would reach three quarters.
    """

    def __init__(self, initial_buckets: int = DEFAULT_INITIAL_BUCKETS) -> None:
        if initial_buckets <= 0 or initial_buckets & (initial_buckets - 1):
            raise ValueError("bucket count must be a positive power of two")
        self._buckets: list[list[SlabHashEntry]] = [[] for _ in range(initial_buckets)]
        self.resize_threshold = initial_buckets * 3 // 4
        self._num_entries = 0
        self.lookups = 0
        self.collisions = 0
        self.rehashes = 0

    @property
    def num_buckets(self) -> int:
        return len(self._buckets)

    @property
    def hash_mask(self) -> int:
        return len(self._buckets) - 1

    def _resize(self) -> None:
        new_size = len(self._buckets) * 2
        mask = new_size - 1
        new_buckets: list[list[SlabHashEntry]] = [[] for _ in range(new_size)]
        for chain in self._buckets:
            for entry in chain:
                new_buckets[slab_hash(entry.page_addr, mask)].insert(0, entry)
        self._buckets = new_buckets
        self.resize_threshold = new_size * 3 // 4
        self.rehashes += 1

    def insert(self, slab: SlabLike) -> None:
        """Record every page that ``slab`` spans."""
        start_addr, end_addr, start_page, end_page = _page_span(slab)
        num_pages = (end_page - start_page) // PAGE_SIZE + 1
        if self._num_entries + num_pages >= self.resize_threshold:
            self._resize()
        for page_addr in range(start_page, end_page + 1, PAGE_SIZE):
            entry = SlabHashEntry(
                page_addr=page_addr,
                start_addr=start_addr,
                end_addr=end_addr,
                cache=slab.cache,
                slab=slab,
            )
            self._buckets[slab_hash(page_addr, self.hash_mask)].insert(0, entry)
            self._num_entries += 1

    def remove(self, slab: SlabLike) -> int:
        """Forget ``slab``; returns how many entries were removed."""
        _, _, start_page, end_page = _page_span(slab)
        removed = 0
        for page_addr in range(start_page, end_page + 1, PAGE_SIZE):
            chain = self._buckets[slab_hash(page_addr, self.hash_mask)]
            for index, entry in enumerate(chain):
                if entry.slab is slab:
                    del chain[index]
                    self._num_entries -= 1
                    removed += 1
                    break
        return removed

    def find(self, addr: Optional[int]) -> Any:
        """The cache whose slab holds ``addr``, or None."""
        if not addr:
            return None
        page_addr = addr & ~(PAGE_SIZE - 1)
        self.lookups += 1
        for entry in self._buckets[slab_hash(page_addr, self.hash_mask)]:
            if entry.covers(addr):
                return entry.cache
            self.collisions += 1
        return None

    def entry_count(self) -> int:
        return self._num_entries

    def load_factor_percent(self) -> int:
        """Entries per bucket, as a whole percentage."""
        if not self._buckets:
            return 0
        return self._num_entries * 100 // len(self._buckets)

    def chain_lengths(self) -> list[int]:
        """Length of the collision chain in each bucket."""
        return [len(chain) for chain in self._buckets]

    def format_stats(self) -> str:
        """Human-readable summary of the table."""
        lines = [
            "=== Slab Lookup Statistics ===",
            f"Buckets: {self.num_buckets}",
            f"Entries: {self._num_entries}",
            f"Load factor: {self.load_factor_percent()}%",
            f"Total lookups: {self.lookups}",
            f"Collisions: {self.collisions}",
            f"Rehashes: {self.rehashes}",
        ]
        if self._num_entries > 0:
            lengths = self.chain_lengths()
            lines += [
                "",
                f"Non-empty buckets: {sum(1 for n in lengths if n)}",
                f"Max chain length: {max(lengths)}",
            ]
        return "\n".join(lines)