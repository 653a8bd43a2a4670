"""Simulated kernel memory management: boot memory maps, frames, heap, paging and ELF loading."""

__version__ = "0.1.0"

__all__ = ["elf", "elf_manifest", "heap", "multiboot", "paging", "pmm", "vmm"]