"""Dependency-aware execution of command-line task graphs."""

__version__ = "0.1.0"
