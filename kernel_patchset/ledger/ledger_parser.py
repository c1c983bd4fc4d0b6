#!/usr/bin/env python3
"""
Spec Ledger Parser.

Reads kernel spec file text and produces the authoritative list of patch
records. Each line is classified into one of a small set of kinds
(version, declaration, application directive, malformed, other) and the
records are built from the classified lines. Declarations and application
directives may live in different sections of the file.

Accepted forms::

    Patch7: b.patch          #Patch7: b.patch       # Patch 7: b.patch
    %patch 7                 %patch7                #%patch 7 -p1
    %patch -P 7
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from kernel_patchset.errors import LedgerMalformed
from kernel_patchset.ledger.patch_record import (
    DirectiveState, LedgerLine, LineKind, ParsedLedger, PatchRecord
)

COMMENT_MARKER = '#'

_COMMENT_PREFIX = re.compile(r'^(?P<indent>[ \t]*)(?P<comment>#[ \t]*)?(?P<body>.*)$', re.DOTALL)
_VERSION = re.compile(r'^Version[ \t]*:[ \t]*(?P<version>\S*)')
_DECLARATION_HINT = re.compile(r'^Patch[ \t]*\d')
_DECLARATION = re.compile(
    r'^Patch[ \t]*(?P<number>\d+)[ \t]*:[ \t]*(?P<filename>\S+\.patch)[ \t]*$'
)
_APPLICATION_HINT = re.compile(r'^%patch(?![A-Za-z_])')
_APPLICATION_NUMBER = re.compile(r'^[ \t]*(?P<number>\d+)(?=[ \t]|$)')
_APPLICATION_OPTION = re.compile(r'(?:^|[ \t])-P[ \t]*(?P<number>\d+)(?=[ \t]|$)')


def split_comment(text: str) -> Tuple[str, bool, str]:
    """
    Split a line into indentation, comment flag and body.

    The body has its line ending removed.
    """
    stripped = text.rstrip('\r\n')
    match = _COMMENT_PREFIX.match(stripped)
    return match.group('indent'), match.group('comment') is not None, match.group('body')


def _application_number(body: str) -> Optional[int]:
    rest = body[len('%patch'):]
    match = _APPLICATION_NUMBER.match(rest)
    if match is None:
        match = _APPLICATION_OPTION.search(rest)
    if match is None:
        return None
    return int(match.group('number'))


def classify_line(index: int, text: str) -> LedgerLine:
    """Tokenize a single ledger line."""
    _indent, commented, body = split_comment(text)

    if not commented:
        version_match = _VERSION.match(body)
        if version_match:
            return LedgerLine(index, LineKind.VERSION, text,
                              version=version_match.group('version'))

    if _DECLARATION_HINT.match(body):
        match = _DECLARATION.match(body.rstrip())
        if match is None:
            return LedgerLine(index, LineKind.MALFORMED, text, commented=commented)
        return LedgerLine(index, LineKind.DECLARATION, text,
                          number=int(match.group('number')),
                          commented=commented,
                          filename=match.group('filename'))

    if _APPLICATION_HINT.match(body):
        number = _application_number(body)
        if number is None:
            return LedgerLine(index, LineKind.MALFORMED, text, commented=commented)
        return LedgerLine(index, LineKind.APPLICATION, text,
                          number=number, commented=commented)

    return LedgerLine(index, LineKind.OTHER, text, commented=commented)


def split_lines(text: str) -> List[str]:
    """Split on newline only, keeping line endings so the text rejoins exactly."""
    parts = text.split('\n')
    lines = [part + '\n' for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def tokenize(text: str) -> Tuple[LedgerLine, ...]:
    return tuple(classify_line(i, line) for i, line in enumerate(split_lines(text)))


class LedgerParser:
    """
    Parser for the patch ledger held in a kernel spec file.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def parse(self, text: str) -> ParsedLedger:
        """
        Parse ledger text into a ParsedLedger.

        Args:
            text: Full spec file text

        Returns:
            ParsedLedger with records in declaration order

        Raises:
            LedgerMalformed: missing/empty version or duplicate patch numbers
        """
        lines = tokenize(text)
        warnings: List[str] = []

        version = self._extract_version(lines)

        declarations: Dict[int, LedgerLine] = {}
        for line in lines:
            if line.kind == LineKind.MALFORMED:
                message = f"line {line.line_number}: skipping malformed patch line: {line.text.strip()}"
                self.logger.warning(message)
                warnings.append(message)
            elif line.kind == LineKind.DECLARATION:
                if line.number in declarations:
                    first = declarations[line.number]
                    raise LedgerMalformed(
                        f"duplicate declaration of Patch{line.number} "
                        f"(first declared on line {first.line_number})",
                        line.line_number
                    )
                declarations[line.number] = line

        applications = [line for line in lines if line.kind == LineKind.APPLICATION]
        chosen = self._choose_applications(applications)

        records = []
        for number, declaration in declarations.items():
            application = chosen.get(number)
            if application is None:
                app_state = DirectiveState.ABSENT
                position = None
                app_line = None
            else:
                position, line = application
                app_state = DirectiveState.COMMENTED if line.commented else DirectiveState.ACTIVE
                app_line = line.index
            records.append(PatchRecord(
                number=number,
                filename=declaration.filename,
                declaration_state=(DirectiveState.COMMENTED if declaration.commented
                                   else DirectiveState.ACTIVE),
                application_state=app_state,
                sequence_position=position,
                declaration_line=declaration.index,
                application_line=app_line,
            ))

        orphans = sorted({n for n in chosen if n not in declarations})
        for number in orphans:
            message = f"application directive for undeclared patch {number}"
            self.logger.warning(message)
            warnings.append(message)

        self.logger.debug(f"Parsed {len(records)} patch records for version {version}")
        return ParsedLedger(
            version=version,
            lines=lines,
            records=records,
            orphan_applications=orphans,
            warnings=warnings,
        )

    def parse_file(self, spec_path: Union[str, Path]) -> ParsedLedger:
        """Read and parse a spec file."""
        spec_path = Path(spec_path)
        if not spec_path.exists():
            raise LedgerMalformed(f"Spec file not found: {spec_path}")
        return self.parse(spec_path.read_text())

    def _extract_version(self, lines: Tuple[LedgerLine, ...]) -> str:
        for line in lines:
            if line.kind == LineKind.VERSION:
                if not line.version:
                    raise LedgerMalformed("Version line has no version token", line.line_number)
                return line.version
        raise LedgerMalformed("Could not extract kernel version from spec file")

    def _choose_applications(self, applications: List[LedgerLine]) -> Dict[int, Tuple[int, LedgerLine]]:
        """
        Pick the effective application directive for each patch number.

        An active directive wins over commented ones; among equals the first
        in text order wins. The position is the index among all application
        directives.
        """
        chosen: Dict[int, Tuple[int, LedgerLine]] = {}
        for position, line in enumerate(applications):
            current = chosen.get(line.number)
            if current is None or (current[1].commented and not line.commented):
                chosen[line.number] = (position, line)
        return chosen


def parse(text: str) -> ParsedLedger:
    return LedgerParser().parse(text)


def serialize(ledger: ParsedLedger) -> str:
    """Render a parsed ledger back to text, unchanged."""
    return ledger.text
