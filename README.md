# secmm

A self-contained model of a small x86-64 kernel's memory subsystem. Everything
runs in Python on a simulated physical memory, so boot-time memory maps, frame
allocation, heap management, four-level page tables and ELF loading can be
exercised and inspected without real hardware.

## Modules

- `secmm.multiboot`: decoding of the Multiboot 1 information structure
  (`parse_multiboot1_info`) and memory map (`parse_multiboot1_mmap`), and of
  Multiboot 2 tag streams (`iter_multiboot2_tags`, `parse_multiboot2_mmap`,
  `parse_multiboot2_framebuffer`). Memory ranges come back as `MemoryRegion`
  values whose `type` is a `MemoryType`.
- `secmm.pmm`: `PhysicalMemory`, a sparse byte-addressable RAM where unwritten
  bytes read as zero, and `PhysicalMemoryManager`, a bitmap allocator of 4 KiB
  frames. It is set up with `build(regions)`, `init_mb1(info, mmap)` or
  `init_mb2(data)`; frames from 0 up to the end of the bitmap (placed at
  `kernel_end`, 2 MiB by default) stay reserved, and at most 512 MiB is
  tracked. `alloc_frame` returns the lowest free frame or raises
  `OutOfMemoryError`; `free_frame`, `is_used` and `format_stats` complete it.
- `secmm.heap`: `Heap`, a first-fit allocator of 24-byte-header blocks with
  splitting and coalescing that grows one frame at a time. `malloc`,
  `malloc_aligned`, `free`, `blocks()` and `stats()` (a `HeapStats` with
  `allocated`, `freed` and `in_use`).
- `secmm.paging`: `AddressSpace`, a four-level page table stored in
  `PhysicalMemory`, with `map`, `unmap`, `translate`, `entry`, `alloc_page`
  and the user helpers `map_user_page`, `map_user_code` (read-only,
  executable) and `map_user_data` (writable, no-execute). `PageFlag` holds the
  entry bits; `MappingError` reports misaligned, already-mapped or unmapped
  pages. `phys_to_virt` and `virt_to_phys` convert to and from the physmap.
- `secmm.vmm`: `VirtualMemoryManager`, which owns the kernel space and adds
  the physmap with 2 MiB pages (`init_physmap`, `extend_physmap`), user
  spaces (`create_user_space`, `destroy_space`, `switch_space`,
  `harden_user_space`), user stacks with an unmapped guard page below them
  (`alloc_user_stack`), W^X protection of kernel sections described by
  `KernelSections` (`protect_kernel_sections`), demand-zero `Region`s
  (`region_add`, `region_find`, up to 32) and `handle_page_fault`, which maps
  a fresh page for a not-present fault inside a region and otherwise raises
  `PageFaultError`. `describe_fault_error` and `describe_entry` produce
  readable text.
- `secmm.elf_manifest`: `parse_manifest` finds the `SECOS` note in an ELF
  `PT_NOTE` segment and returns a `Manifest`; `validate_manifest` checks its
  entry hint against the real entry point. Errors derive from
  `ManifestError`.
- `secmm.elf`: `parse_header`, `program_headers`, and `load_image`, which maps
  every `PT_LOAD` segment of a static ELF64 image into an `AddressSpace`,
  copies its contents and zero-fills the tail, returning a `LoadedImage` with
  the entry point and the pages mapped. Segments that are both writable and
  executable, code outside the user code window, data outside the data window,
  and alignments other than 0 or 4096 are refused. `unload_image` unmaps the
  pages and frees their frames. Errors derive from `ElfError`; on failure
  `load_image` releases the pages it had mapped.

Diagnostics go through the standard `logging` module.

## Install

```
pip install .
```

## Example

```python
from secmm.multiboot import MemoryRegion
from secmm.pmm import PhysicalMemory, PhysicalMemoryManager
from secmm.heap import Heap

pmm = PhysicalMemoryManager()
pmm.build([MemoryRegion(0x100000, 16 * 1024 * 1024)])

frame = pmm.alloc_frame()
print(hex(frame), pmm.is_used(frame))
pmm.free_frame(frame)

heap = Heap(pmm)
ptr = heap.malloc(64)
heap.free(ptr)
print(heap.format_stats())
```

Loading a program into a fresh user address space:

```python
from secmm.vmm import VirtualMemoryManager
from secmm.elf import load_image, unload_image

memory = PhysicalMemory()
vmm = VirtualMemoryManager(memory, pmm)
space = vmm.create_user_space()
image = load_image(elf_bytes, space)
# ... later
unload_image(space, image.pages)
```

## What it does not do

It is a model, not a kernel: nothing boots, no instructions run, there is no
TLB or CR3 and `switch_space` only records the current space. Page-table walks
in `AddressSpace` treat every level as a table and do not follow 2 MiB pages,
so physmap entries are written but not translated. There are no processes;
callers keep the page lists that `load_image` returns. `validate_manifest`
checks only the entry hint.

## Tests

```
pip install ".[test]"
pytest
```