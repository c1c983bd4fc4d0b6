#!/usr/bin/env python3
"""
Status Reporter.

Builds human-readable summaries of the patch ledger and of test outcomes:
counts per status and result, a patch-by-patch table, and the edit each
clean or fuzzy patch would need. Reporting never changes anything.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from kernel_patchset.errors import PatchsetError
from kernel_patchset.ledger.ledger_mutator import plan_edits
from kernel_patchset.ledger.patch_record import (
    DisabledReason, LedgerEdit, ParsedLedger, PatchRecord, PatchStatus, TestOutcome, TrialResult
)

RED = '\033[0;31m'
GREEN = '\033[0;32m'
YELLOW = '\033[1;33m'
NC = '\033[0m'

RESULT_COLORS = {
    TrialResult.CLEAN: GREEN,
    TrialResult.FUZZY: YELLOW,
    TrialResult.FAILED: RED,
    TrialResult.ERROR: RED,
}

RESULT_DESCRIPTIONS = {
    TrialResult.CLEAN: "Applies without conflicts",
    TrialResult.FUZZY: "Applies with minor conflicts (fuzz)",
    TrialResult.FAILED: "Significant conflicts, needs manual update",
    TrialResult.MISSING: "Patch file not found",
    TrialResult.ERROR: "Test failed",
}


def suggested_command(number: int, spec_name: str = "linux.spec") -> str:
    """Shell one-liner that re-enables a patch, accepting either spacing style."""
    return (f"sed -i -E 's/^#[[:space:]]*(Patch[[:space:]]*{number}[[:space:]]*:)/\\1/; "
            f"s/^#[[:space:]]*(%patch[[:space:]]*{number}([[:space:]]|$))/\\1/' {spec_name}")


@dataclass
class ReportSummary:
    """Counts behind a status report."""
    enabled: int = 0
    disabled: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)
    by_result: Dict[str, int] = field(default_factory=dict)
    tested: int = 0


def summarize(records: Iterable[PatchRecord],
              outcomes: Optional[Iterable[TestOutcome]] = None) -> ReportSummary:
    records = list(records)
    outcomes = list(outcomes or [])
    reasons = Counter(r.disabled_reason.value for r in records if r.disabled_reason is not None)
    results = Counter(o.result.value for o in outcomes)
    return ReportSummary(
        enabled=sum(1 for r in records if r.status == PatchStatus.ENABLED),
        disabled=sum(1 for r in records if r.status == PatchStatus.DISABLED),
        by_reason=dict(reasons),
        by_result={result.value: results.get(result.value, 0) for result in TrialResult},
        tested=len(outcomes),
    )


class StatusReporter:
    """
    Renders ledger status and test results as text.
    """

    def __init__(self, spec_name: str = "linux.spec", color: bool = False, version: str = None):
        self.spec_name = spec_name
        self.color = color
        self.version = version

    def _paint(self, text: str, color: Optional[str]) -> str:
        if not self.color or not color:
            return text
        return f"{color}{text}{NC}"

    def _cell(self, text: str, width: int, color: Optional[str]) -> str:
        # pad before colouring so escape codes do not break alignment
        return self._paint(f"{text:<{width}}", color)

    def status_table(self, records: Iterable[PatchRecord]) -> List[str]:
        lines = [f"{'STATUS':<9} {'PATCH#':<8} {'FILENAME':<50} DESCRIPTION",
                 f"{'------':<9} {'------':<8} {'--------':<50} -----------"]
        for record in records:
            if record.is_enabled:
                label, color = "ENABLED", GREEN
            elif record.disabled_reason == DisabledReason.BOTH_COMMENTED:
                label, color = "DISABLED", RED
            else:
                label, color = "PARTIAL", YELLOW
            lines.append(f"{self._cell(label, 9, color)} {record.number:<8} "
                         f"{record.filename:<50} {record.describe()}")
        return lines

    def results_table(self, outcomes: Iterable[TestOutcome]) -> List[str]:
        lines = [f"{'PATCH#':<8} {'FILENAME':<50} {'RESULT':<8} DESCRIPTION",
                 f"{'------':<8} {'--------':<50} {'------':<8} -----------"]
        for outcome in outcomes:
            lines.append(f"{outcome.number:<8} {outcome.filename:<50} "
                         f"{self._cell(outcome.result.value, 8, RESULT_COLORS.get(outcome.result))} "
                         f"{outcome.message or RESULT_DESCRIPTIONS[outcome.result]}")
        return lines

    def suggested_edits(self, outcomes: Iterable[TestOutcome],
                        ledger: Optional[ParsedLedger] = None) -> List[str]:
        """Edits that would enable each clean or fuzzy patch, without applying them."""
        lines = []
        for outcome in outcomes:
            if outcome.result not in (TrialResult.CLEAN, TrialResult.FUZZY):
                continue
            prefix = "" if outcome.result == TrialResult.CLEAN else "# May work with fuzz - "
            lines.append(f"Patch {outcome.number} ({outcome.result.value}):")
            if ledger is not None:
                try:
                    changes = plan_edits(ledger, [LedgerEdit.enable(outcome.number)])
                except PatchsetError as e:
                    lines.append(f"    cannot enable: {e}")
                    continue
                if not changes:
                    lines.append("    already enabled")
                    continue
                for change in changes:
                    lines.append(f"    {change.describe()}")
            lines.append(f"    {prefix}{suggested_command(outcome.number, self.spec_name)}")
        return lines

    def report(self, records: Iterable[PatchRecord],
               outcomes: Optional[Iterable[TestOutcome]] = None,
               ledger: Optional[ParsedLedger] = None) -> str:
        """
        Full status report.

        Args:
            records: Ledger patch records
            outcomes: Test outcomes from this or an earlier run
            ledger: Parsed ledger, used to show line-exact edits

        Returns:
            Report text
        """
        records = list(records)
        outcomes = list(outcomes) if outcomes is not None else None
        summary = summarize(records, outcomes)

        title = "Patch status"
        if self.version:
            title = f"{title} for Linux {self.version}"
        lines = [title, "=" * len(title), ""]
        lines.extend(self.status_table(records))
        lines.append("")
        lines.append(f"Summary: {summary.enabled} enabled, {summary.disabled} disabled/partial patches")
        for reason, count in sorted(summary.by_reason.items()):
            lines.append(f"  {reason}: {count}")

        if outcomes is not None:
            lines.extend(["", "Test results", "------------"])
            lines.extend(self.results_table(outcomes))
            lines.append("")
            lines.append(f"  Total tested: {summary.tested}")
            lines.append(self._paint(f"  Clean applies: {summary.by_result['CLEAN']}", GREEN))
            lines.append(self._paint(f"  Fuzzy applies: {summary.by_result['FUZZY']}", YELLOW))
            lines.append(self._paint(f"  Failed applies: {summary.by_result['FAILED']}", RED))
            lines.append(f"  Missing files: {summary.by_result['MISSING']}")
            lines.append(f"  Errors: {summary.by_result['ERROR']}")
            edits = self.suggested_edits(outcomes, ledger)
            if edits:
                lines.extend(["", "Edits to enable applicable patches:",
                              "===================================="])
                lines.extend(edits)
        return "\n".join(lines) + "\n"
