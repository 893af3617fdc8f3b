import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from kmemsim.orders import (
    PAGE_ALLOC_MAX_ORDER,
    PAGE_SIZE,
    buddy_address,
    order_for_size,
    size_for_order,
)
from kmemsim.page_alloc import (
    PAGE_ALLOC_INITIAL_CHUNK_SIZE,
    DoubleFreeError,
    PageAllocError,
    PageAllocator,
    PageBlock,
)
from kmemsim.pmm import PhysicalMemoryManager

RAM_BASE = 0x40000000
RAM_SIZE = 64 * 1024 * 1024


def make_allocator(size=RAM_SIZE):
    pmm = PhysicalMemoryManager(RAM_BASE, size)
    return pmm, PageAllocator(pmm)


def assert_disjoint(spans):
    ordered = sorted(spans)
    for (a_start, a_len), (b_start, _) in zip(ordered, ordered[1:]):
        assert a_start + a_len <= b_start


def test_initial_chunk_is_preallocated():
    pmm, alloc = make_allocator()
    assert alloc.stats().pmm_chunks_allocated == 1
    assert len(alloc.chunks) == 1
    assert alloc.total_pages == alloc.free_pages
    assert pmm.stats().allocated_pages == PAGE_ALLOC_INITIAL_CHUNK_SIZE // PAGE_SIZE


def test_initial_blocks_are_aligned_and_inside_chunk():
    _, alloc = make_allocator()
    chunk = alloc.chunks[0]
    used = [b for b in chunk.blocks if b.phys_addr is not None]
    assert used
    for block in used:
        assert block.phys_addr % size_for_order(block.order) == 0
        assert chunk.phys_addr <= block.phys_addr
        assert block.phys_addr + size_for_order(block.order) <= chunk.phys_addr + chunk.size
    assert sum(1 << b.order for b in used) == alloc.total_pages


def test_tiny_pmm_has_no_chunk_and_runs_out():
    _, alloc = make_allocator(8 * PAGE_SIZE)
    assert alloc.chunks == ()
    assert alloc.total_pages == 0
    with pytest.raises(MemoryError):
        alloc.alloc(0)


@pytest.mark.parametrize("order", [0, 1, 2, 3, 4])
def test_alloc_returns_aligned_block(order):
    _, alloc = make_allocator()
    before = alloc.free_pages
    addr = alloc.alloc(order)
    assert addr % size_for_order(order) == 0
    assert alloc.free_pages == before - (1 << order)
    stats = alloc.stats()
    assert stats.allocations[order] == 1
    assert stats.current_allocated[order] == 1


def test_alloc_then_free_restores_free_lists():
    _, alloc = make_allocator()
    counts = alloc.free_list_counts()
    addr = alloc.alloc(0)
    assert alloc.free_list_counts() != counts
    alloc.free(addr, 0)
    assert alloc.free_list_counts() == counts
    assert alloc.free_pages == alloc.total_pages
    stats = alloc.stats()
    assert sum(stats.splits) == sum(stats.coalesces)
    assert alloc.check_integrity() == []


def test_double_free_is_detected():
    _, alloc = make_allocator()
    addr = alloc.alloc(1)
    alloc.free(addr, 1)
    with pytest.raises(DoubleFreeError):
        alloc.free(addr, 1)


def test_free_rejects_null_and_misaligned():
    _, alloc = make_allocator()
    with pytest.raises(PageAllocError):
        alloc.free(0, 0)
    with pytest.raises(PageAllocError):
        alloc.free(RAM_BASE + 1, 0)


def test_free_of_unknown_address():
    pmm, alloc = make_allocator()
    with pytest.raises(PageAllocError):
        alloc.free(pmm.memory_end() - PAGE_SIZE, 0)


def test_negative_order_rejected():
    _, alloc = make_allocator()
    with pytest.raises(ValueError):
        alloc.alloc(-1)


def test_max_order_goes_straight_to_pmm():
    pmm, alloc = make_allocator()
    before = pmm.stats().allocated_pages
    addr = alloc.alloc(PAGE_ALLOC_MAX_ORDER)
    assert pmm.stats().allocated_pages == before + (1 << PAGE_ALLOC_MAX_ORDER)
    assert alloc.stats().allocations[PAGE_ALLOC_MAX_ORDER] == 1
    alloc.free(addr, PAGE_ALLOC_MAX_ORDER)
    assert pmm.stats().allocated_pages == before
    assert alloc.stats().frees[PAGE_ALLOC_MAX_ORDER] == 1
    assert alloc.stats().current_allocated[PAGE_ALLOC_MAX_ORDER] == 0


def test_alloc_multiple_small_uses_single_order():
    _, alloc = make_allocator()
    order = order_for_size(5 * PAGE_SIZE)
    addr = alloc.alloc_multiple(5)
    assert alloc.stats().allocations[order] == 1
    alloc.free_multiple(addr, 5)
    assert all(count == 0 for count in alloc.stats().current_allocated)


def test_alloc_multiple_zero_rejected():
    _, alloc = make_allocator()
    with pytest.raises(ValueError):
        alloc.alloc_multiple(0)


def test_free_multiple_zero_changes_nothing():
    _, alloc = make_allocator()
    before = alloc.stats()
    alloc.free_multiple(RAM_BASE, 0)
    assert alloc.stats() == before


def test_alloc_multiple_beyond_max_order_splits_request():
    pmm, alloc = make_allocator()
    before = pmm.stats().allocated_pages
    alloc.alloc_multiple((1 << PAGE_ALLOC_MAX_ORDER) + 1)
    stats = alloc.stats()
    assert stats.allocations[PAGE_ALLOC_MAX_ORDER] == 1
    assert stats.allocations[0] == 1
    assert pmm.stats().allocated_pages >= before + (1 << PAGE_ALLOC_MAX_ORDER)


def test_coalesce_requires_equal_orders_and_buddies():
    _, alloc = make_allocator()
    assert alloc.coalesce(PageBlock(RAM_BASE, 0), PageBlock(RAM_BASE + PAGE_SIZE, 1)) is None
    assert alloc.coalesce(PageBlock(RAM_BASE, 0), PageBlock(RAM_BASE + 2 * PAGE_SIZE, 0)) is None
    top = PAGE_ALLOC_MAX_ORDER
    assert alloc.coalesce(PageBlock(RAM_BASE, top), PageBlock(buddy_address(RAM_BASE, top), top)) is None


def test_coalesce_merges_into_lower_block():
    _, alloc = make_allocator()
    high = PageBlock(RAM_BASE + PAGE_SIZE, 0)
    low = PageBlock(RAM_BASE, 0)
    merged = alloc.coalesce(high, low)
    assert merged is low
    assert merged.order == 1
    assert high.phys_addr is None
    assert alloc.stats().coalesces[0] == 1


def test_split_block_ignores_higher_target():
    _, alloc = make_allocator()
    block = PageBlock(RAM_BASE, 2)
    alloc.split_block(block, 3)
    assert block.order == 2


def test_find_buddy_after_split():
    _, alloc = make_allocator()
    addr = alloc.alloc(0)
    buddy = alloc.find_buddy(PageBlock(addr, 0))
    assert buddy is not None
    assert buddy.phys_addr == buddy_address(addr, 0)
    assert not buddy.allocated


def test_exhaustion_hands_out_distinct_pages():
    pmm, alloc = make_allocator(32 * PAGE_SIZE)
    addrs = []
    with pytest.raises(MemoryError):
        for _ in range(200):
            addrs.append(alloc.alloc(0))
    assert addrs
    assert len(set(addrs)) == len(addrs)
    assert all(pmm.memory_start() <= a < pmm.memory_end() for a in addrs)


def test_empty_chunk_is_returned_to_pmm():
    _, alloc = make_allocator()
    addrs = []
    while len(alloc.chunks) < 2 and len(addrs) < 1000:
        addrs.append(alloc.alloc(0))
    assert len(alloc.chunks) == 2
    for addr in addrs:
        alloc.free(addr, 0)
    stats = alloc.stats()
    assert len(alloc.chunks) == 1
    assert stats.pmm_chunks_freed == stats.pmm_chunks_allocated - 1
    assert alloc.free_pages == alloc.total_pages
    assert alloc.check_integrity() == []


def test_format_stats_reports_chunks():
    _, alloc = make_allocator()
    text = alloc.format_stats()
    assert text.startswith("Page Allocator Statistics:")
    assert "Total chunks: 1" in text
    assert "PMM chunks allocated: 1" in text


operations = st.lists(
    st.one_of(
        st.tuples(st.just("alloc"), st.integers(min_value=0, max_value=3)),
        st.tuples(st.just("free"), st.integers(min_value=0, max_value=1000)),
    ),
    max_size=40,
)


@settings(max_examples=40, deadline=None)
@given(operations)
def test_random_workload_keeps_invariants(ops):
    _, alloc = make_allocator()
    live = []
    for kind, value in ops:
        if kind == "alloc":
            live.append((alloc.alloc(value), value))
        elif live:
            addr, order = live.pop(value % len(live))
            alloc.free(addr, order)
        assert_disjoint([(a, size_for_order(o)) for a, o in live])
        assert alloc.check_integrity() == []
    for addr, order in live:
        alloc.free(addr, order)
    assert alloc.free_pages == alloc.total_pages
    assert all(count == 0 for count in alloc.stats().current_allocated)