import pytest
from hypothesis import given, strategies as st

from kmemsim.pmm import (
    PAGE_SIZE,
    UART_BASE,
    MemoryRegion,
    PhysicalMemoryManager,
    PmmInitError,
    initialize,
)

RAM_BASE = 0x40000000


def make(pages=64):
    return PhysicalMemoryManager(RAM_BASE, pages * PAGE_SIZE)


def check_totals(pmm):
    s = pmm.stats()
    assert s.free_pages + s.allocated_pages + s.reserved_pages == s.total_pages


# Carried over from the source's own PMM tests.

def test_single_page_alloc_and_free():
    pmm = make()
    page = pmm.alloc_page()
    assert page != 0 and (page & 0xFFF) == 0
    assert not pmm.is_available(page)
    assert pmm.free_page(page) is True
    assert pmm.is_available(page)


def test_multi_page_alloc():
    pmm = make()
    pages = pmm.alloc_pages(4)
    assert pages != 0 and (pages & 0xFFF) == 0
    assert all(not pmm.is_available(pages + i * PAGE_SIZE) for i in range(4))
    assert pmm.free_pages(pages, 4) == 4
    assert all(pmm.is_available(pages + i * PAGE_SIZE) for i in range(4))


def test_double_free_is_silently_handled():
    pmm = make()
    page = pmm.alloc_page()
    assert pmm.free_page(page) is True
    assert pmm.free_page(page) is False
    s = pmm.stats()
    assert s.free_pages == s.total_pages
    assert s.allocated_pages == 0


# Further behaviour.

def test_first_page_is_lowest_address():
    pmm = make()
    assert pmm.alloc_page() == pmm.memory_start()
    assert pmm.alloc_page() == pmm.memory_start() + PAGE_SIZE


def test_memory_bounds():
    pmm = make(16)
    assert pmm.memory_start() == RAM_BASE
    assert pmm.memory_end() == RAM_BASE + 16 * PAGE_SIZE
    assert pmm.stats().total_pages == 16


def test_contiguous_search_skips_holes():
    pmm = make(8)
    a = pmm.alloc_page()
    b = pmm.alloc_page()
    c = pmm.alloc_page()
    pmm.free_page(b)
    run = pmm.alloc_pages(2)
    assert run == c + PAGE_SIZE
    assert pmm.alloc_page() == b
    check_totals(pmm)
    assert not pmm.is_available(a)


def test_exhaustion_raises_memory_error():
    pmm = make(4)
    for _ in range(4):
        pmm.alloc_page()
    with pytest.raises(MemoryError):
        pmm.alloc_page()
    with pytest.raises(MemoryError):
        make(4).alloc_pages(5)


def test_zero_count_rejected():
    with pytest.raises(ValueError):
        make().alloc_pages(0)


def test_free_outside_range_ignored():
    pmm = make(4)
    assert pmm.free_page(RAM_BASE - PAGE_SIZE) is False
    assert pmm.free_page(pmm.memory_end()) is False
    assert pmm.stats().free_pages == 4


def test_alloc_page_table_counts():
    pmm = make()
    pmm.alloc_page_table()
    pmm.alloc_page_table()
    s = pmm.stats()
    assert s.page_table_pages == 2
    assert s.allocated_pages == 2


def test_reserve_region_rounds_to_pages():
    pmm = make(8)
    pmm.reserve_region(RAM_BASE + 0x100, 0x10, "small")
    assert not pmm.is_available(RAM_BASE)
    assert pmm.is_available(RAM_BASE + PAGE_SIZE)
    assert pmm.stats().reserved_pages == 1
    check_totals(pmm)


def test_reserve_region_is_clipped_and_idempotent():
    pmm = make(8)
    pmm.reserve_region(RAM_BASE - PAGE_SIZE, 3 * PAGE_SIZE, "low")
    pmm.reserve_region(RAM_BASE, 2 * PAGE_SIZE, "again")
    assert pmm.stats().reserved_pages == 2
    pmm.reserve_region(pmm.memory_end() + PAGE_SIZE, PAGE_SIZE, "outside")
    assert pmm.stats().reserved_pages == 2
    check_totals(pmm)


def test_reserve_page_unaligned():
    pmm = make(8)
    pmm.reserve_page(RAM_BASE + 2 * PAGE_SIZE + 5)
    assert not pmm.is_available(RAM_BASE + 2 * PAGE_SIZE)
    pmm.reserve_page(RAM_BASE + 2 * PAGE_SIZE)
    assert pmm.stats().reserved_pages == 1
    pmm.reserve_page(RAM_BASE - 1)
    assert pmm.stats().reserved_pages == 1


def test_allocation_avoids_reserved_pages():
    pmm = make(4)
    pmm.reserve_region(RAM_BASE, 2 * PAGE_SIZE, "kernel")
    assert pmm.alloc_page() == RAM_BASE + 2 * PAGE_SIZE


def test_stats_returns_snapshot():
    pmm = make()
    snap = pmm.stats()
    pmm.alloc_page()
    assert snap.allocated_pages == 0
    assert pmm.stats().allocated_pages == 1


def test_format_stats_mentions_reservations():
    pmm = make()
    pmm.reserve_region(RAM_BASE, PAGE_SIZE, "Kernel")
    text = pmm.format_stats()
    assert "Physical Memory Manager Statistics" in text
    assert "Kernel:" in text
    assert f"{RAM_BASE:#x}" in text


def boot(fdt=None, size=64 * 1024 * 1024, kernel_end=RAM_BASE + 0x100000):
    return initialize(
        [MemoryRegion(RAM_BASE, size)], kernel_end, fdt, 0x1000, 0x10000
    )


def test_initialize_records_uart_reservation():
    pmm = boot()
    names = [r.name for r in pmm.reservations]
    assert names == ["Kernel", "Boot Page Tables", "PMM Bootstrap", "PL011 UART"]
    assert pmm.reservations[-1].base == UART_BASE


def test_initialize_moves_bootstrap_past_fdt():
    plain = boot()
    fdt = MemoryRegion(plain.bootstrap.start, 0x3000)
    pmm = boot(fdt=fdt)
    assert pmm.bootstrap.start >= fdt.end
    assert pmm.bootstrap.start % PAGE_SIZE == 0
    assert not pmm.is_available(fdt.base)
    assert "FDT" in [r.name for r in pmm.reservations]


def test_initialize_requires_regions():
    with pytest.raises(PmmInitError):
        initialize([], RAM_BASE, None, 0x1000, 0x10000)


def test_initialize_rejects_bootstrap_beyond_limit():
    with pytest.raises(PmmInitError):
        boot(kernel_end=RAM_BASE + 16 * 1024 * 1024)


def _try_alloc(pmm, count):
    try:
        return pmm.alloc_pages(count)
    except MemoryError:
        return None


@given(st.lists(st.tuples(st.booleans(), st.integers(1, 4)), max_size=40))
def test_counters_stay_consistent(ops):
    pmm = make(32)
    held = []
    for do_alloc, count in ops:
        if do_alloc:
            addr = _try_alloc(pmm, count)
            if addr is not None:
                held.append((addr, count))
        elif len(held) > 0:
            addr, n = held.pop()
            assert pmm.free_pages(addr, n) == n
        check_totals(pmm)
    s = pmm.stats()
    assert s.allocated_pages == sum(n for _, n in held)