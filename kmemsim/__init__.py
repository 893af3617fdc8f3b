"""Simulated kernel memory managers: bootstrap, physical pages, buddy pages and slabs."""

__version__ = "0.1.0"

__all__ = ["bootstrap", "pmm", "orders", "page_alloc", "slab_lookup", "slab"]