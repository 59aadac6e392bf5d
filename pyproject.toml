[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "urunc"
version = "0.1.0"
description = "Unikernel configuration, VMM command construction and TAP networking for container runtimes"
requires-python = ">=3.10"
dependencies = []
keywords = ["unikernel", "container", "oci", "qemu", "firecracker", "solo5", "vmm", "tap"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["urunc"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
