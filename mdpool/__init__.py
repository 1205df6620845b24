"""Mirrored software-RAID pool management agent."""

__version__ = "0.1.0"
