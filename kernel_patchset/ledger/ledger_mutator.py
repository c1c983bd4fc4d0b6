#!/usr/bin/env python3
"""
Ledger Mutator.

Turns requested patch state transitions into an explicit edit script over
the parsed ledger lines and applies it in one rewrite pass. Edits are keyed
on patch numbers, never on line positions supplied by the caller, and an
edit whose target state already holds produces no change.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from kernel_patchset.errors import ConcurrentMutationConflict, LedgerMalformed, UnknownPatch
from kernel_patchset.ledger.ledger_file import LedgerFile
from kernel_patchset.ledger.ledger_parser import COMMENT_MARKER, LedgerParser, split_comment
from kernel_patchset.ledger.patch_record import (
    DirectiveState, LedgerEdit, LineKind, ParsedLedger, PatchRecord, TestOutcome, TrialResult
)
from kernel_patchset.utils.file_utils import text_digest

SETUP_MACROS = ('%autosetup', '%setup')
_DIRECTIVE_ARGUMENTS = re.compile(r'^%patch[ \t]*(?:-P[ \t]*)?\d+(?P<args>.*)$')


class ChangeKind(Enum):
    """Kind of line change in an edit script."""
    REPLACE = "replace"
    INSERT = "insert"


@dataclass(frozen=True)
class LineChange:
    """
    One step of an edit script.

    For REPLACE, index is the line being rewritten. For INSERT, the new line
    goes after line ``index`` (-1 inserts before the first line).
    """
    kind: ChangeKind
    number: int
    index: int
    new_text: str
    old_text: Optional[str] = None

    def describe(self) -> str:
        if self.kind == ChangeKind.REPLACE:
            return f"line {self.index + 1}: {self.old_text.rstrip()!r} -> {self.new_text.rstrip()!r}"
        return f"insert after line {self.index + 1}: {self.new_text.rstrip()!r}"


@dataclass(frozen=True)
class EditPolicy:
    """
    Chooses which tested patches get enabled.

    Clean results are always accepted; fuzzy results only when
    include_fuzzy is set, since fuzzy application can drift silently.
    """
    include_fuzzy: bool = False

    def accepts(self, result: TrialResult) -> bool:
        if result == TrialResult.CLEAN:
            return True
        return self.include_fuzzy and result == TrialResult.FUZZY

    def select(self, ledger: ParsedLedger, outcomes: Iterable[TestOutcome]) -> List[LedgerEdit]:
        """Enable-edits for accepted outcomes of patches not already enabled."""
        edits = []
        seen = set()
        for outcome in outcomes:
            if outcome.number in seen or not self.accepts(outcome.result):
                continue
            record = ledger.get(outcome.number)
            if record is None or record.is_enabled:
                continue
            seen.add(outcome.number)
            edits.append(LedgerEdit.enable(outcome.number))
        return edits


def _line_ending(text: str) -> str:
    return text[len(text.rstrip('\r\n')):]


def set_commented(text: str, commented: bool) -> str:
    """Add or remove the leading comment marker, leaving everything else intact."""
    indent, is_commented, body = split_comment(text)
    if is_commented == commented:
        return text
    ending = _line_ending(text)
    if commented:
        return f"{indent}{COMMENT_MARKER}{body}{ending}"
    return f"{indent}{body}{ending}"


def _application_style(ledger: ParsedLedger) -> str:
    """Format string for a new %patch line, following the ledger's majority style."""
    counts = {"%patch {number}": 0, "%patch{number}": 0, "%patch -P {number}": 0}
    for line in ledger.lines:
        if line.kind != LineKind.APPLICATION:
            continue
        body = split_comment(line.text)[2]
        rest = body[len('%patch'):]
        if rest[:1].isdigit():
            counts["%patch{number}"] += 1
        elif rest.lstrip().startswith('-'):
            counts["%patch -P {number}"] += 1
        else:
            counts["%patch {number}"] += 1
    # dict order breaks ties in favour of the spaced form
    return max(counts, key=lambda style: counts[style])


def _insertion_index(ledger: ParsedLedger, number: int) -> int:
    """Line index after which a new application directive for number goes."""
    applications = [line for line in ledger.lines if line.kind == LineKind.APPLICATION]
    if applications:
        smaller = [line for line in applications if line.number < number]
        if smaller:
            return max(line.index for line in smaller)
        return min(line.index for line in applications) - 1

    for line in ledger.lines:
        body = split_comment(line.text)[2]
        if line.kind == LineKind.OTHER and not line.commented and body.startswith(SETUP_MACROS):
            return line.index
    raise LedgerMalformed(
        f"Cannot add an application directive for patch {number}: "
        f"no %patch or %setup/%autosetup line found"
    )


def _neighbour_arguments(ledger: ParsedLedger, index: int) -> str:
    """Arguments after the patch number on the directive next to an insertion point."""
    for candidate in (index, index + 1):
        if 0 <= candidate < len(ledger.lines) and ledger.lines[candidate].kind == LineKind.APPLICATION:
            match = _DIRECTIVE_ARGUMENTS.match(split_comment(ledger.lines[candidate].text)[2])
            return match.group('args').rstrip() if match else ''
    return ''


def plan_edits(ledger: ParsedLedger, edits: Iterable[LedgerEdit]) -> List[LineChange]:
    """
    Compute the edit script that moves the named patches to their target states.

    Args:
        ledger: Parsed ledger
        edits: Requested transitions; a later edit for the same number wins

    Returns:
        List of line changes, empty when every target already holds

    Raises:
        UnknownPatch: an edit names an undeclared patch
    """
    merged: Dict[int, LedgerEdit] = {}
    for edit in edits:
        merged[edit.number] = edit

    changes: List[LineChange] = []
    for number, edit in sorted(merged.items()):
        record = ledger.get(number)
        if record is None:
            raise UnknownPatch(number)

        declaration = ledger.lines[record.declaration_line]
        new_text = set_commented(declaration.text, edit.declaration == DirectiveState.COMMENTED)
        if new_text != declaration.text:
            changes.append(LineChange(ChangeKind.REPLACE, number, declaration.index,
                                      new_text, declaration.text))

        if edit.application == DirectiveState.ACTIVE:
            changes.extend(_activate_application(ledger, record))
        else:
            for line in ledger.application_lines(number):
                if not line.commented:
                    changes.append(LineChange(ChangeKind.REPLACE, number, line.index,
                                              set_commented(line.text, True), line.text))
    return changes


def _activate_application(ledger: ParsedLedger, record: PatchRecord) -> List[LineChange]:
    if record.application_state == DirectiveState.ACTIVE:
        return []
    if record.application_state == DirectiveState.COMMENTED:
        line = ledger.lines[record.application_line]
        return [LineChange(ChangeKind.REPLACE, record.number, line.index,
                           set_commented(line.text, False), line.text)]

    index = _insertion_index(ledger, record.number)
    reference = ledger.lines[index] if index >= 0 else ledger.lines[0]
    ending = _line_ending(reference.text) or '\n'
    text = (_application_style(ledger).format(number=record.number)
            + _neighbour_arguments(ledger, index) + ending)
    return [LineChange(ChangeKind.INSERT, record.number, index, text)]


def render(ledger: ParsedLedger, changes: Iterable[LineChange]) -> str:
    """Apply an edit script to the ledger lines in a single pass."""
    replacements: Dict[int, str] = {}
    inserts: Dict[int, List[str]] = defaultdict(list)
    for change in changes:
        if change.kind == ChangeKind.REPLACE:
            replacements[change.index] = change.new_text
        else:
            inserts[change.index].append(change.new_text)

    out: List[str] = list(inserts.get(-1, []))
    for line in ledger.lines:
        text = replacements.get(line.index, line.text)
        out.append(text)
        for new_line in inserts.get(line.index, []):
            if not text.endswith('\n'):
                # last line had no newline; keep the file ending the same way
                out.append('\n')
                new_line = new_line.rstrip('\r\n')
            out.append(new_line)
            text = new_line
    return ''.join(out)


def _signature(record: PatchRecord):
    return record.number, record.filename, record.declaration_state, record.application_state


def _application_reached(state: DirectiveState, target: DirectiveState) -> bool:
    # disabling never adds a directive, so an absent one counts as commented
    if target == DirectiveState.COMMENTED:
        return state in (DirectiveState.COMMENTED, DirectiveState.ABSENT)
    return state == target


def apply_edits(text: str, edits: Iterable[LedgerEdit], parser: LedgerParser = None) -> str:
    """
    Apply edits to ledger text and return the new text.

    The result is re-parsed to confirm that every edited patch reached its
    target state and no other patch changed.
    """
    parser = parser or LedgerParser()
    edits = list(edits)
    before = parser.parse(text)
    changes = plan_edits(before, edits)
    if not changes:
        return text

    new_text = render(before, changes)
    after = parser.parse(new_text)

    targets = {edit.number: edit for edit in edits}
    for record in after.records:
        edit = targets.get(record.number)
        if edit is None:
            previous = before.get(record.number)
            if previous is None or _signature(previous) != _signature(record):
                raise LedgerMalformed(f"Edit script altered patch {record.number}")
        elif (record.declaration_state != edit.declaration
              or not _application_reached(record.application_state, edit.application)):
            raise LedgerMalformed(f"Edit for patch {record.number} did not reach its target state")
    return new_text


class LedgerMutator:
    """
    Applies patch state transitions to the spec file on disk.
    """

    def __init__(self, spec_path: Union[str, Path], lock_timeout: float = 0.0):
        """
        Initialize the ledger mutator.

        Args:
            spec_path: Path to the spec file
            lock_timeout: Seconds to wait for the ledger lock (0 = fail fast)
        """
        self.ledger_file = LedgerFile(spec_path, lock_timeout=lock_timeout)
        self.parser = LedgerParser()
        self.logger = logging.getLogger(__name__)

    def plan(self, edits: Iterable[LedgerEdit]) -> List[LineChange]:
        """Edit script for the current ledger, without writing anything."""
        text, _digest = self.ledger_file.read()
        return plan_edits(self.parser.parse(text), edits)

    def apply(self, edits: Iterable[LedgerEdit], expected_digest: Optional[str] = None) -> str:
        """
        Apply edits to the spec file under the ledger lock.

        Args:
            edits: Requested transitions
            expected_digest: SHA-256 of the ledger text the caller based its
                edits on; if the file changed since, nothing is written

        Returns:
            The new ledger text (unchanged text when every edit was a no-op)

        Raises:
            ConcurrentMutationConflict: lock held elsewhere, or ledger changed
        """
        edits = list(edits)
        with self.ledger_file.locked():
            text = self.ledger_file.read_unlocked()
            if expected_digest is not None and text_digest(text) != expected_digest:
                raise ConcurrentMutationConflict(
                    f"Ledger {self.ledger_file.spec_path} changed since it was read; "
                    f"re-read the ledger and retry"
                )
            new_text = apply_edits(text, edits, self.parser)
            if new_text == text:
                self.logger.info("Ledger already in requested state, nothing to write")
                return text
            self.ledger_file.write_unlocked(new_text)

        for edit in edits:
            self.logger.info(f"Patch {edit.number}: declaration {edit.declaration.value}, "
                             f"application {edit.application.value}")
        return new_text

    def enable(self, numbers: Iterable[int], expected_digest: Optional[str] = None) -> str:
        return self.apply([LedgerEdit.enable(n) for n in numbers], expected_digest)

    def disable(self, numbers: Iterable[int], expected_digest: Optional[str] = None) -> str:
        return self.apply([LedgerEdit.disable(n) for n in numbers], expected_digest)
