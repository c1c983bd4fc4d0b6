#!/usr/bin/env python3
"""
Results artifact for patch test runs.

A flat, append-only text file. Each run appends a header block followed by
one ``NUM|FILENAME|RESULT|SUGGESTED_EDIT`` line per tested patch. The file
is a report for humans and for ``enable-clean``; the ledger stays the only
authority on patch state.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Union

from kernel_patchset.ledger.patch_record import TestOutcome, TrialResult
from kernel_patchset.report.status_reporter import suggested_command
from kernel_patchset.utils.file_utils import ensure_directory

FORMAT_LINE = "# Format: PATCH_NUM|FILENAME|RESULT|SUGGESTED_EDIT"


class ResultsStore:
    """Reads and appends the results artifact."""

    def __init__(self, results_path: Union[str, Path], spec_name: str = "linux.spec"):
        self.results_path = Path(results_path)
        self.spec_name = spec_name
        self.logger = logging.getLogger(__name__)

    def append_run(self, version: str, outcomes: Iterable[TestOutcome]) -> int:
        """
        Append one run's outcomes.

        Returns:
            Number of outcome lines written
        """
        ensure_directory(self.results_path.parent)
        lines = [
            f"# Patch Test Results for Linux {version}",
            f"# Generated: {datetime.now().isoformat(timespec='seconds')}",
            FORMAT_LINE,
        ]
        count = 0
        for outcome in outcomes:
            lines.append("|".join([
                str(outcome.number),
                outcome.filename,
                outcome.result.value,
                self._suggestion(outcome),
            ]))
            count += 1

        with open(self.results_path, 'a') as f:
            if f.tell() > 0:
                f.write("\n")
            f.write("\n".join(lines) + "\n")
        self.logger.info(f"Results saved to: {self.results_path}")
        return count

    def _suggestion(self, outcome: TestOutcome) -> str:
        if outcome.result == TrialResult.CLEAN:
            return suggested_command(outcome.number, self.spec_name)
        if outcome.result == TrialResult.FUZZY:
            return f"# May work with fuzz - {suggested_command(outcome.number, self.spec_name)}"
        if outcome.result == TrialResult.FAILED:
            return "# Needs manual update"
        if outcome.result == TrialResult.MISSING:
            return "# Patch file not found"
        return "# Test error"

    def exists(self) -> bool:
        return self.results_path.exists()

    def load(self) -> List[TestOutcome]:
        """
        Latest outcome per patch number, in order of first appearance.

        Unparseable lines are skipped with a warning.
        """
        latest: Dict[int, TestOutcome] = {}
        if not self.results_path.exists():
            return []
        with open(self.results_path, 'r') as f:
            for line_number, line in enumerate(f, 1):
                line = line.rstrip('\n')
                if not line.strip() or line.startswith('#'):
                    continue
                parts = line.split('|', 3)
                try:
                    number = int(parts[0])
                    result = TrialResult(parts[2])
                except (IndexError, ValueError):
                    self.logger.warning(f"{self.results_path}:{line_number}: skipping unreadable line")
                    continue
                latest[number] = TestOutcome(number, parts[1], result)
        return list(latest.values())
