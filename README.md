# kmemsim

This package simulates the memory managers of an operating-system kernel. Memory
is never really allocated. Each component tracks physical addresses and
bookkeeping only, so you can study allocation policy, fragmentation and
statistics from plain Python.

## Components

- **`kmemsim.bootstrap`**
  - `BootstrapAllocator(start, end)` is an early-boot bump allocator. `alloc(size, alignment)` returns aligned addresses, and nothing is ever freed.
  - `current()` and `used()` report its progress.
  - It raises `BootstrapExhaustedError`, a `MemoryError`, when the region is used up.
- **`kmemsim.pmm`**
  - `PhysicalMemoryManager(base, size)` is a bitmap page manager for one contiguous RAM range.
  - It provides `alloc_page`, `alloc_page_table`, `alloc_pages(count)` (lowest fit first), `free_page`, `free_pages`, `reserve_region`, `reserve_page` and `is_available`.
  - `stats()` returns a `PmmStats` snapshot, and `format_stats()` returns a text summary.
  - `initialize(regions, kernel_end, fdt, boot_page_table_padding, boot_page_table_size)` lays out the boot page tables and a bootstrap allocator after the kernel. It then builds a manager for the first `MemoryRegion` only. Finally it reserves the kernel image, the boot page tables, the bootstrap area, the device tree region (if one is given) and the UART page at `0x09000000`. It raises `PmmInitError` when it cannot do this.
- **`kmemsim.orders`** holds the page-order helpers:
  - `order_for_size` returns `ORDER_TOO_LARGE` above order 12.
  - `size_for_order`, `buddy_address`, `align_up`, `align_down`, `ilog2` and `is_power_of_two`.
- **`kmemsim.page_alloc`**
  - `PageAllocator(pmm)` is a buddy allocator. It takes a 1 MiB chunk from the manager when it is created, takes more chunks as needed, and gives empty chunks back (it always keeps at least one).
  - Requests of order 12 and above go straight to the page manager.
  - It also provides `alloc_multiple` / `free_multiple`, `free_list_counts()`, `check_integrity()` (a list of problems found), `stats()` (`PageAllocStats`) and `format_stats()`.
- **`kmemsim.slab_lookup`**
  - `SlabLookup(initial_buckets)` is a chained hash table with one entry per page spanned by each slab. It maps an address to the cache that owns it.
  - It doubles its bucket count when the load would reach three quarters.
- **`kmemsim.slab`**
  - `SlabAllocator(pmm, lookup)` creates and destroys `KmemCache`s.
  - Each cache keeps full, partial and empty `Slab` lists.
  - When a slab becomes empty, the cache gives a second empty slab back to the page manager, unless `CacheFlags.NOREAP` is set.
  - `CacheFlags.NOTRACK` keeps a cache's slabs out of the lookup table.

## Example

```python
from kmemsim.pmm import PhysicalMemoryManager
from kmemsim.page_alloc import PageAllocator
from kmemsim.slab_lookup import SlabLookup
from kmemsim.slab import SlabAllocator, CacheFlags

pmm = PhysicalMemoryManager(0x4000_0000, 64 * 1024 * 1024)

pages = PageAllocator(pmm)
addr = pages.alloc(2)          # four contiguous pages
pages.free(addr, 2)

slabs = SlabAllocator(pmm, SlabLookup(64))
cache = slabs.create_cache("objects", 64, 16, CacheFlags.NONE)
obj = cache.alloc()
assert slabs.find_cache_for_object(obj) is cache
cache.free(obj)
print(cache.format())
```

## Errors

Failures are raised as exceptions:

- Running out of physical pages raises `MemoryError`.
- The page allocator raises `PageAllocError`. Its subclass `DoubleFreeError` covers freeing a block twice.
- The slab layer raises `SlabError` for unknown objects or objects freed twice.
- An invalid size, order or alignment raises `ValueError`.

## What it does not do

- There is no backing store. Contents of pages and objects are not modelled, so `AllocFlags.ZERO` and `AllocFlags.NOSLEEP` are accepted but have no effect.
- There is no general-purpose `kmalloc`-style layer over the slab caches.
- There is no virtual memory or direct-map translation.
- There is no command-line program.
- None of the components are thread-safe.

## Tests

```
pip install -e ".[test]"
pytest
```