"""Filesystem message bus between an automation client and a single-threaded host."""

__version__ = "0.1.0"
