[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "secmm"
version = "0.1.0"
description = "Simulated x86-64 kernel memory management: multiboot parsing, frame allocator, heap, paging and a W^X ELF loader"
requires-python = ">=3.10"
dependencies = []
keywords = ["kernel", "memory", "paging", "elf", "multiboot", "allocator", "simulation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
    "Topic :: System :: Operating System Kernels",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["secmm"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
