#!/usr/bin/env python3
"""
Patch ledger and trial outcome data model.

A PatchRecord is derived fresh from the spec file text on every run. Its
status is computed from the declaration and application states only.
A TestOutcome lives for one run and is never written back to the ledger.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class DirectiveState(Enum):
    """State of a declaration or application directive."""
    ACTIVE = "active"
    COMMENTED = "commented"
    ABSENT = "absent"


class PatchStatus(Enum):
    """Derived status of a patch."""
    ENABLED = "enabled"
    DISABLED = "disabled"


class DisabledReason(Enum):
    """Why a patch is disabled."""
    DECLARATION_COMMENTED = "declaration_commented"
    APPLICATION_COMMENTED = "application_commented"
    APPLICATION_ABSENT = "application_absent"
    BOTH_COMMENTED = "both_commented"


DISABLED_REASON_TEXT = {
    DisabledReason.DECLARATION_COMMENTED: "Declaration commented only",
    DisabledReason.APPLICATION_COMMENTED: "Application commented only",
    DisabledReason.APPLICATION_ABSENT: "No application directive",
    DisabledReason.BOTH_COMMENTED: "Declaration and application commented",
}


class LineKind(Enum):
    """Kinds of lines recognised by the ledger tokenizer."""
    VERSION = "version"
    DECLARATION = "declaration"
    APPLICATION = "application"
    MALFORMED = "malformed"
    OTHER = "other"


@dataclass(frozen=True)
class LedgerLine:
    """One tokenized line of the ledger, including its line ending."""
    index: int
    kind: LineKind
    text: str
    number: Optional[int] = None
    commented: bool = False
    filename: Optional[str] = None
    version: Optional[str] = None

    @property
    def line_number(self) -> int:
        return self.index + 1


@dataclass(frozen=True)
class PatchRecord:
    """One declared patch and its state in the ledger."""
    number: int
    filename: str
    declaration_state: DirectiveState
    application_state: DirectiveState
    sequence_position: Optional[int] = None
    declaration_line: Optional[int] = None
    application_line: Optional[int] = None

    @property
    def status(self) -> PatchStatus:
        return derive_status(self.declaration_state, self.application_state)

    @property
    def disabled_reason(self) -> Optional[DisabledReason]:
        return derive_disabled_reason(self.declaration_state, self.application_state)

    @property
    def is_enabled(self) -> bool:
        return self.status == PatchStatus.ENABLED

    def describe(self) -> str:
        """Short human-readable status description."""
        reason = self.disabled_reason
        if reason is None:
            return "Active"
        return DISABLED_REASON_TEXT[reason]


def derive_status(declaration: DirectiveState, application: DirectiveState) -> PatchStatus:
    if declaration == DirectiveState.ACTIVE and application == DirectiveState.ACTIVE:
        return PatchStatus.ENABLED
    return PatchStatus.DISABLED


def derive_disabled_reason(declaration: DirectiveState,
                           application: DirectiveState) -> Optional[DisabledReason]:
    if derive_status(declaration, application) == PatchStatus.ENABLED:
        return None
    if application == DirectiveState.ABSENT:
        return DisabledReason.APPLICATION_ABSENT
    if declaration == DirectiveState.COMMENTED and application == DirectiveState.COMMENTED:
        return DisabledReason.BOTH_COMMENTED
    if declaration == DirectiveState.COMMENTED:
        return DisabledReason.DECLARATION_COMMENTED
    return DisabledReason.APPLICATION_COMMENTED


@dataclass(frozen=True)
class LedgerEdit:
    """Requested target state for one patch."""
    number: int
    declaration: DirectiveState
    application: DirectiveState

    def __post_init__(self):
        for state in (self.declaration, self.application):
            if state == DirectiveState.ABSENT:
                raise ValueError("Edit targets must be ACTIVE or COMMENTED")

    @classmethod
    def enable(cls, number: int) -> 'LedgerEdit':
        return cls(number, DirectiveState.ACTIVE, DirectiveState.ACTIVE)

    @classmethod
    def disable(cls, number: int) -> 'LedgerEdit':
        return cls(number, DirectiveState.COMMENTED, DirectiveState.COMMENTED)


@dataclass
class ParsedLedger:
    """Result of parsing a spec file."""
    version: str
    lines: Tuple[LedgerLine, ...]
    records: List[PatchRecord]
    orphan_applications: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def __post_init__(self):
        self._by_number: Dict[int, PatchRecord] = {r.number: r for r in self.records}

    @property
    def text(self) -> str:
        return ''.join(line.text for line in self.lines)

    def get(self, number: int) -> Optional[PatchRecord]:
        return self._by_number.get(number)

    def enabled(self) -> List[PatchRecord]:
        """Enabled patches in cumulative application order."""
        enabled = [r for r in self.records if r.is_enabled]
        return sorted(enabled, key=lambda r: r.sequence_position)

    def disabled(self) -> List[PatchRecord]:
        return [r for r in self.records if not r.is_enabled]

    def application_lines(self, number: int) -> List[LedgerLine]:
        return [line for line in self.lines
                if line.kind == LineKind.APPLICATION and line.number == number]

    def __eq__(self, other):
        if not isinstance(other, ParsedLedger):
            return NotImplemented
        return (self.version == other.version
                and self.records == other.records
                and self.orphan_applications == other.orphan_applications)


class TrialResult(Enum):
    """Classification of a trial patch application."""
    CLEAN = "CLEAN"
    FUZZY = "FUZZY"
    FAILED = "FAILED"
    MISSING = "MISSING"
    ERROR = "ERROR"


@dataclass(frozen=True)
class RejectFragment:
    """Conflict hunks written by the patch tool for one target file."""
    path: str
    content: str


@dataclass
class TestOutcome:
    """Result of testing one patch against a reference tree."""
    __test__ = False

    number: int
    filename: str
    result: TrialResult
    message: str = ""
    reject_artifacts: List[RejectFragment] = field(default_factory=list)
