#!/usr/bin/env python3
"""
Error taxonomy for the kernel patch-set engine.

Only fatal conditions are raised as exceptions. Per-patch trial outcomes
(clean, fuzzy, failed, missing) are data and live on TestOutcome.
"""

from typing import List, Optional


class PatchsetError(Exception):
    """Base class for all patch-set errors."""


class LedgerMalformed(PatchsetError):
    """The spec file cannot be used as a patch ledger."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class UnknownPatch(PatchsetError):
    """An edit names a patch number that is not declared in the ledger."""

    def __init__(self, number: int):
        self.number = number
        super().__init__(f"Patch {number} is not declared in the ledger")


class PatchMissing(PatchsetError):
    """A patch file referenced by the ledger does not exist on disk."""

    def __init__(self, number: int, filename: str):
        self.number = number
        self.filename = filename
        super().__init__(f"Patch {number}: file not found: {filename}")


class SequenceBreak(PatchsetError):
    """Cumulative application of the enabled patch set stopped at a patch."""

    def __init__(self, number: int, filename: str, applied_count: int,
                 rejects: List = None, detail: str = ""):
        self.number = number
        self.filename = filename
        self.applied_count = applied_count
        self.rejects = rejects or []
        message = (f"Patch {number} ({filename}) failed to apply after "
                   f"{applied_count} patches applied cleanly in sequence")
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ConcurrentMutationConflict(PatchsetError):
    """Another writer holds the ledger, or changed it since it was read."""


class SourceFetchError(PatchsetError):
    """The reference kernel source tree could not be fetched."""


class ConfigError(PatchsetError):
    """Invalid patch-set configuration."""
