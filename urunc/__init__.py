"""Unikernel configuration, VMM command construction and TAP networking for container runtimes."""

__version__ = "0.1.0"