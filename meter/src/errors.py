"""
Exceptions raised by the meter engine.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations


class MeterError(Exception):
    """Base class for recoverable meter errors. No state was changed."""


class RestoreError(MeterError):
    """A backup could not be restored."""


class BackupMissingError(RestoreError):
    """The backup register is empty."""


class BackupCorruptError(RestoreError):
    """The backup register does not hold a valid snapshot."""


class InvalidAdjustmentError(MeterError):
    """A manual daily consumption value is not a non-negative number."""
