#!/usr/bin/env python3
"""
Cumulative Sequence Validator.

Applies every enabled patch, in ledger application order, to one shared
working copy, exactly as the package build does. The first patch that does
not apply stops the run; nothing after it is attempted.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Union

from kernel_patchset.errors import SequenceBreak
from kernel_patchset.ledger.patch_record import PatchRecord, RejectFragment
from kernel_patchset.patch.patch_apply import PatchApplyTool, collect_rejects
from kernel_patchset.patch.working_copy import WorkingCopy
from kernel_patchset.utils.file_utils import ensure_directory


@dataclass
class SequenceFailure:
    """The patch that broke cumulative application."""
    number: int
    filename: str
    message: str
    reject_artifacts: List[RejectFragment] = field(default_factory=list)
    reject_dir: Optional[str] = None


@dataclass
class SequenceReport:
    """Result of cumulative validation."""
    all_succeeded: bool
    applied_count: int
    total: int
    applied: List[int] = field(default_factory=list)
    first_failure: Optional[SequenceFailure] = None

    def raise_for_failure(self) -> None:
        """Raise SequenceBreak if the sequence did not apply completely."""
        if self.first_failure is None:
            return
        failure = self.first_failure
        raise SequenceBreak(failure.number, failure.filename, self.applied_count,
                            failure.reject_artifacts, failure.message)


class SequenceValidator:
    """
    Validates that the enabled patch set applies in order.
    """

    def __init__(self, project_root: Union[str, Path], reference_tree: Union[str, Path],
                 scratch_root: Union[str, Path], fuzz: int = 0,
                 apply_tool: PatchApplyTool = None, reject_dir: Union[str, Path] = None):
        """
        Initialize the sequence validator.

        Args:
            project_root: Directory patch filenames are relative to
            reference_tree: Pristine kernel source tree (read only)
            scratch_root: Directory the shared working copy is created under
            fuzz: Fuzz tolerance used for every patch, as in the build
            apply_tool: Patch tool adapter
            reject_dir: Where reject files of the failing patch are saved
        """
        self.project_root = Path(project_root)
        self.reference_tree = Path(reference_tree)
        self.scratch_root = Path(scratch_root)
        self.fuzz = fuzz
        self.apply_tool = apply_tool or PatchApplyTool()
        self.reject_dir = Path(reject_dir) if reject_dir else None
        self.logger = logging.getLogger(__name__)

    def validate_sequence(self, enabled_patches: Iterable[PatchRecord]) -> SequenceReport:
        """
        Apply the patches cumulatively, stopping at the first failure.

        Args:
            enabled_patches: Enabled patch records; applied in sequence position order

        Returns:
            SequenceReport
        """
        ordered = sorted(enabled_patches, key=_sequence_key)
        report = SequenceReport(all_succeeded=True, applied_count=0, total=len(ordered))
        if not ordered:
            return report

        self.logger.info(f"Applying {len(ordered)} enabled patches cumulatively")
        with WorkingCopy(self.reference_tree, self.scratch_root, label="cumulative") as workdir:
            for record in ordered:
                failure = self._apply_one(record, workdir)
                if failure is not None:
                    report.all_succeeded = False
                    report.first_failure = failure
                    self.logger.error(
                        f"Patch {record.number} ({record.filename}) failed after "
                        f"{report.applied_count} patches; stopping cumulative test"
                    )
                    break
                report.applied_count += 1
                report.applied.append(record.number)
                self.logger.info(f"Applied patch {record.number} ({record.filename})")

        if report.all_succeeded:
            self.logger.info("All enabled patches applied successfully in sequence")
        return report

    def _apply_one(self, record: PatchRecord, workdir: Path) -> Optional[SequenceFailure]:
        patch_file = self.project_root / record.filename
        if not patch_file.is_file():
            return SequenceFailure(record.number, record.filename, "Patch file not found")

        result = self.apply_tool.apply(workdir, patch_file, fuzz=self.fuzz, dry_run=False)
        if result.success:
            return None

        rejects = collect_rejects(workdir)
        message = "; ".join(result.conflicts) or result.stderr.strip() or "patch failed"
        failure = SequenceFailure(record.number, record.filename, message, rejects)
        if self.reject_dir is not None and rejects:
            failure.reject_dir = str(self._save_rejects(record.number, workdir, rejects))
        return failure

    def _save_rejects(self, number: int, workdir: Path, rejects: List[RejectFragment]) -> Path:
        target = self.reject_dir / f"patch-{number}"
        if target.exists():
            shutil.rmtree(target)
        ensure_directory(target)
        for fragment in rejects:
            destination = target / fragment.path
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(workdir / fragment.path, destination)
        self.logger.error(f"Reject files for patch {number} saved to: {target}")
        return target


def _sequence_key(record: PatchRecord):
    position = record.sequence_position
    return (position is None, position if position is not None else 0, record.number)
