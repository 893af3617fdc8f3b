[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kmemsim"
version = "0.1.0"
description = "Simulated kernel memory managers: bootstrap bump allocator, bitmap physical page manager, buddy page allocator and slab caches"
requires-python = ">=3.10"
dependencies = []
keywords = ["memory", "allocator", "buddy", "slab", "pmm", "kernel", "simulation"]
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
    "Topic :: System :: Operating System Kernels",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest", "hypothesis"]

[tool.hatch.build.targets.wheel]
packages = ["kmemsim"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
