"""Slab allocator: fixed-size object caches carved from physical pages.

Objects are identified by their addresses; the allocator keeps no backing
store, so only placement and bookkeeping are modelled.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Optional

from kmemsim.orders import align_up
from kmemsim.pmm import PAGE_SIZE, PhysicalMemoryManager
from kmemsim.slab_lookup import SlabLookup

SLAB_HEADER_SIZE = 64
FREELIST_ENTRY_SIZE = 4
MIN_SLAB_SIZE = PAGE_SIZE
MAX_SLAB_SIZE = 64 * PAGE_SIZE
MIN_ALIGN = 8
MIN_OBJECTS_PER_SLAB = 8
CACHE_NAME_LEN = 32

__all__ = [
    "AllocFlags",
    "CacheFlags",
    "KmemCache",
    "KmemStats",
    "MAX_SLAB_SIZE",
    "Slab",
    "SlabAllocator",
    "SlabError",
]


class CacheFlags(enum.IntFlag):
    NONE = 0
    NOTRACK = 0x1
    """Slabs of this cache are not entered in the address lookup table."""
    NOREAP = 0x2
    """Empty slabs are kept instead of being returned to the page manager."""


class AllocFlags(enum.IntFlag):
    NONE = 0
    NOSLEEP = 0x1
    ZERO = 0x2


class SlabError(RuntimeError):
    """Raised when an object cannot be returned to its cache."""


@dataclass
class KmemStats:
    allocs: int = 0
    frees: int = 0
    active_objs: int = 0
    total_objs: int = 0
    active_slabs: int = 0
    total_slabs: int = 0


@dataclass(eq=False)
class Slab:
    """A run of pages holding ``num_objects`` equally sized objects."""

    cache: "KmemCache"
    slab_addr: int
    slab_size: int
    slab_base: int
    num_objects: int
    _free: list[int] = field(init=False, repr=False)
    _free_set: set[int] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        # Stack of free indices; the lowest index is handed out first.
        self._free = list(range(self.num_objects - 1, -1, -1))
        self._free_set = set(self._free)

    @property
    def num_free(self) -> int:
        return len(self._free)

    @property
    def object_size(self) -> int:
        return self.cache.object_size

    def contains(self, obj: int) -> bool:
        """True if ``obj`` lies inside this slab's object area."""
        return self.slab_base <= obj < self.slab_base + self.num_objects * self.object_size

    def allocate(self) -> int:
        """Take the next free object and return its address."""
        if not self._free:
            raise SlabError("slab has no free objects")
        index = self._free.pop()
        self._free_set.discard(index)
        return self.slab_base + index * self.object_size

    def release(self, obj: int) -> int:
        """Put ``obj`` back on the free list; returns its index."""
        if not self.contains(obj):
            raise SlabError(f"object {obj:#x} is not in this slab")
        index = (obj - self.slab_base) // self.object_size
        if index in self._free_set:
            raise SlabError(f"double free of object {obj:#x}")
        self._free.append(index)
        self._free_set.add(index)
        return index


def _objects_per_slab(object_size: int, align: int) -> int:
    metadata = align_up(SLAB_HEADER_SIZE, align)
    per_object = object_size + FREELIST_ENTRY_SIZE
    slab_size = MIN_SLAB_SIZE
    while slab_size < MAX_SLAB_SIZE:
        count = (slab_size - metadata) // per_object
        if count >= MIN_OBJECTS_PER_SLAB:
            return count
        slab_size *= 2
    return (MAX_SLAB_SIZE - metadata) // per_object


class KmemCache:
    """A pool of objects of one size, kept in full, partial and empty slabs."""

    def __init__(
        self,
        name: str,
        object_size: int,
        align: int,
        flags: CacheFlags,
        address: int,
        pmm: PhysicalMemoryManager,
        lookup: Optional[SlabLookup],
    ) -> None:
        self.name = name
        self.object_size = object_size
        self.align = align
        self.flags = CacheFlags(flags)
        self.address = address
        self.objects_per_slab = _objects_per_slab(object_size, align)
        self.full_slabs: list[Slab] = []
        self.partial_slabs: list[Slab] = []
        self.empty_slabs: list[Slab] = []
        self._stats = KmemStats()
        self._pmm = pmm
        self._lookup = lookup

    @property
    def _tracked(self) -> bool:
        return self._lookup is not None and not self.flags & CacheFlags.NOTRACK

    def _create_slab(self) -> Slab:
        count = self.objects_per_slab
        needed = SLAB_HEADER_SIZE + count * self.object_size + count * FREELIST_ENTRY_SIZE
        slab_size = MIN_SLAB_SIZE
        while slab_size < needed and slab_size < MAX_SLAB_SIZE:
            slab_size *= 2
        addr = self._pmm.alloc_pages(slab_size // PAGE_SIZE)
        slab = Slab(
            cache=self,
            slab_addr=addr,
            slab_size=slab_size,
            slab_base=align_up(addr + SLAB_HEADER_SIZE, self.align),
            num_objects=count,
        )
        self._stats.total_slabs += 1
        self._stats.total_objs += count
        if self._tracked:
            self._lookup.insert(slab)
        return slab

    def _destroy_slab(self, slab: Slab) -> None:
        if self._tracked:
            self._lookup.remove(slab)
        self._stats.total_slabs -= 1
        self._stats.total_objs -= slab.num_objects
        self._pmm.free_pages(slab.slab_addr, slab.slab_size // PAGE_SIZE)

    def _destroy_all_slabs(self) -> None:
        for slabs in (self.full_slabs, self.partial_slabs, self.empty_slabs):
            while slabs:
                self._destroy_slab(slabs.pop(0))

    def alloc(self, flags: AllocFlags = AllocFlags.NONE) -> int:
        """Allocate one object and return its address.

        Raises MemoryError when no slab can be obtained.
        """
        if self.partial_slabs:
            slab = self.partial_slabs[0]
        elif self.empty_slabs:
            slab = self.empty_slabs.pop(0)
            self.partial_slabs.insert(0, slab)
            self._stats.active_slabs += 1
        else:
            slab = self._create_slab()
            self.partial_slabs.insert(0, slab)
            self._stats.active_slabs += 1

        obj = slab.allocate()
        if slab.num_free == 0:
            self.partial_slabs.remove(slab)
            self.full_slabs.insert(0, slab)
        self._stats.allocs += 1
        self._stats.active_objs += 1
        return obj

    def free(self, obj: int) -> None:
        """Return ``obj`` to the cache."""
        slab = next(
            (s for s in (*self.full_slabs, *self.partial_slabs) if s.contains(obj)),
            None,
        )
        if slab is None:
            raise SlabError(f"object {obj:#x} not found in cache {self.name!r}")

        slab.release(obj)
        self._stats.frees += 1
        self._stats.active_objs -= 1

        if slab.num_free == 1:
            if slab in self.full_slabs:
                self.full_slabs.remove(slab)
                self.partial_slabs.insert(0, slab)
        elif slab.num_free == slab.num_objects:
            self.partial_slabs.remove(slab)
            self.empty_slabs.insert(0, slab)
            self._stats.active_slabs -= 1
            if not self.flags & CacheFlags.NOREAP and len(self.empty_slabs) > 1:
                # Keep the slab just emptied; release the one behind it.
                self._destroy_slab(self.empty_slabs.pop(1))

    def find_slab(self, obj: int) -> Optional[Slab]:
        """The slab whose object area holds ``obj``, or None."""
        if not obj:
            return None
        for slabs in (self.full_slabs, self.partial_slabs, self.empty_slabs):
            for slab in slabs:
                if slab.contains(obj):
                    return slab
        return None

    def contains(self, obj: int) -> bool:
        return self.find_slab(obj) is not None

    def stats(self) -> KmemStats:
        """A snapshot of the cache counters."""
        return replace(self._stats)

    def slab_counts(self) -> tuple[int, int, int]:
        """Number of full, partial and empty slabs."""
        return len(self.full_slabs), len(self.partial_slabs), len(self.empty_slabs)

    def format(self) -> str:
        """Human-readable description of the cache."""
        s = self._stats
        full, partial, empty = self.slab_counts()
        return "\n".join(
            [
                f"Cache: {self.name}",
                f"  Object size: {self.object_size}, Align: {self.align}",
                f"  Objects per slab: {self.objects_per_slab}",
                "  Statistics:",
                f"    Allocations: {s.allocs}",
                f"    Frees: {s.frees}",
                f"    Active objects: {s.active_objs}",
                f"    Total objects: {s.total_objs}",
                f"    Active slabs: {s.active_slabs}",
                f"    Total slabs: {s.total_slabs}",
                f"  Slab lists: {full} full, {partial} partial, {empty} empty",
            ]
        )

    def __repr__(self) -> str:
        return (
            f"KmemCache(name={self.name!r}, object_size={self.object_size}, "
            f"align={self.align})"
        )


class SlabAllocator:
    """Creates and tracks object caches backed by a physical page manager."""

    def __init__(
        self, pmm: PhysicalMemoryManager, lookup: Optional[SlabLookup] = None
    ) -> None:
        self.pmm = pmm
        self.lookup = lookup if lookup is not None else SlabLookup()
        self._caches: list[KmemCache] = []

    def create_cache(
        self,
        name: str,
        size: int,
        align: int = 0,
        flags: CacheFlags = CacheFlags.NONE,
    ) -> KmemCache:
        """Create a cache for objects of ``size`` bytes."""
        if size <= 0 or size > MAX_SLAB_SIZE // 2:
            raise ValueError(f"invalid object size {size}")
        if align < MIN_ALIGN:
            align = MIN_ALIGN
        size = align_up(size, align)
        address = self.pmm.alloc_pages(1)
        cache = KmemCache(
            name=name[: CACHE_NAME_LEN - 1],
            object_size=size,
            align=align,
            flags=flags,
            address=address,
            pmm=self.pmm,
            lookup=self.lookup,
        )
        self._caches.insert(0, cache)
        return cache

    def destroy_cache(self, cache: KmemCache) -> None:
        """Release every slab of ``cache`` and the cache itself."""
        cache._destroy_all_slabs()
        if cache in self._caches:
            self._caches.remove(cache)
        self.pmm.free_pages(cache.address, 1)

    def find_cache_for_object(self, obj: Optional[int]) -> Optional[KmemCache]:
        """The cache that owns ``obj``, found through the lookup table."""
        if not obj:
            return None
        return self.lookup.find(obj)

    def caches(self) -> tuple[KmemCache, ...]:
        """All live caches, most recently created first."""
        return tuple(self._caches)

    def format_all(self) -> str:
        """Description of every cache."""
        parts = ["=== Slab Cache Dump ==="]
        parts.extend(cache.format() for cache in self._caches)
        parts.append("======================")
        return "\n".join(parts)