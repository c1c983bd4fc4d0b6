#!/usr/bin/env python3
"""
Patch Application Tester.

Tests one patch at a time against a private, throw-away copy of the
reference kernel tree and classifies the result as clean, fuzzy, failed,
missing or error. Independent tests run in parallel on a bounded worker
pool; each owns its copy, so no test can see another's files.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

import psutil

from kernel_patchset.errors import PatchMissing
from kernel_patchset.ledger.patch_record import PatchRecord, TestOutcome, TrialResult
from kernel_patchset.patch.patch_apply import PatchApplyTool, collect_rejects, extract_target_files
from kernel_patchset.patch.working_copy import InsufficientSpace, WorkingCopy
from kernel_patchset.utils.file_utils import directory_size, free_space

DEFAULT_FUZZ = 3


def default_worker_count() -> int:
    """Physical CPU count, falling back to logical CPUs, then 1."""
    return psutil.cpu_count(logical=False) or psutil.cpu_count() or 1


class PatchTester:
    """
    Isolated trial application of individual patches.
    """

    def __init__(self, project_root: Union[str, Path], reference_tree: Union[str, Path],
                 scratch_root: Union[str, Path], fuzz: int = DEFAULT_FUZZ,
                 apply_tool: PatchApplyTool = None, sparse: bool = True):
        """
        Initialize the patch tester.

        Args:
            project_root: Directory patch filenames are relative to
            reference_tree: Pristine kernel source tree (read only)
            scratch_root: Directory ephemeral copies are created under
            fuzz: Fuzz tolerance for the second, tolerant attempt
            apply_tool: Patch tool adapter
            sparse: Copy only the files each patch touches
        """
        self.project_root = Path(project_root)
        self.reference_tree = Path(reference_tree)
        self.scratch_root = Path(scratch_root)
        self.fuzz = fuzz
        self.apply_tool = apply_tool or PatchApplyTool()
        self.sparse = sparse
        self.logger = logging.getLogger(__name__)

    def patch_path(self, record: PatchRecord) -> Path:
        return self.project_root / record.filename

    def require_patch(self, record: PatchRecord) -> Path:
        """Path of the patch file; raises PatchMissing if it does not exist."""
        patch_file = self.patch_path(record)
        if not patch_file.is_file():
            raise PatchMissing(record.number, record.filename)
        return patch_file

    def worker_count(self) -> int:
        """
        Automatic pool size.

        Full copies are limited by how many copies of the reference tree
        fit in the free space under the scratch directory.
        """
        workers = default_worker_count()
        if not self.sparse:
            tree_size = directory_size(self.reference_tree)
            if tree_size:
                workers = min(workers, max(1, free_space(self.scratch_root) // tree_size))
        return workers

    def test(self, record: PatchRecord) -> TestOutcome:
        """
        Test whether a patch applies to the reference tree.

        Zero fuzz first; if that fails, the bounded fuzz tolerance. When
        both fail the tolerant attempt is run for real on the copy so the
        patch tool writes reject files, which are collected before the copy
        is deleted.

        Args:
            record: Patch to test

        Returns:
            TestOutcome (never raises for per-patch problems)
        """
        try:
            patch_file = self.require_patch(record)
        except PatchMissing as e:
            self.logger.warning(str(e))
            return TestOutcome(record.number, record.filename, TrialResult.MISSING,
                               "Patch file not found")

        try:
            paths = None
            if self.sparse:
                paths = extract_target_files(patch_file, self.apply_tool.strip) or None
            with WorkingCopy(self.reference_tree, self.scratch_root, paths,
                             label=f"test-{record.number}") as workdir:
                return self._trial(record, patch_file, workdir)
        except InsufficientSpace as e:
            return TestOutcome(record.number, record.filename, TrialResult.ERROR, str(e))
        except Exception as e:
            self.logger.error(f"Patch {record.number}: trial error: {e}")
            return TestOutcome(record.number, record.filename, TrialResult.ERROR,
                               f"Unexpected error: {e}")

    def _trial(self, record: PatchRecord, patch_file: Path, workdir: Path) -> TestOutcome:
        strict = self.apply_tool.apply(workdir, patch_file, fuzz=0, dry_run=True)
        if strict.success:
            self.logger.debug(f"Patch {record.number}: applies cleanly")
            return TestOutcome(record.number, record.filename, TrialResult.CLEAN,
                               "Applies without conflicts")
        if strict.timed_out:
            return TestOutcome(record.number, record.filename, TrialResult.ERROR, strict.stderr)

        tolerant = self.apply_tool.apply(workdir, patch_file, fuzz=self.fuzz, dry_run=True)
        if tolerant.success:
            self.logger.debug(f"Patch {record.number}: applies with fuzz {self.fuzz}")
            return TestOutcome(record.number, record.filename, TrialResult.FUZZY,
                               f"Applies with fuzz (up to {self.fuzz} lines)")
        if tolerant.timed_out:
            return TestOutcome(record.number, record.filename, TrialResult.ERROR, tolerant.stderr)

        # Real run on the disposable copy; only this produces *.rej files
        attempt = self.apply_tool.apply(workdir, patch_file, fuzz=self.fuzz, dry_run=False)
        rejects = collect_rejects(workdir)
        detail = "; ".join(attempt.conflicts or tolerant.conflicts) or attempt.stderr.strip()
        self.logger.debug(f"Patch {record.number}: fails to apply: {detail}")
        return TestOutcome(record.number, record.filename, TrialResult.FAILED,
                           detail or "Fails to apply even with fuzz",
                           reject_artifacts=rejects)

    def test_many(self, records: Iterable[PatchRecord], max_workers: int = 0,
                  on_result: Optional[Callable[[TestOutcome], None]] = None) -> List[TestOutcome]:
        """
        Test several patches concurrently.

        Args:
            records: Patches to test
            max_workers: Pool size (0 = physical CPU count)
            on_result: Called with each outcome as it completes

        Returns:
            Outcomes in the order of records
        """
        records = list(records)
        if not records:
            return []
        workers = max_workers or self.worker_count()
        workers = max(1, min(workers, len(records)))
        self.logger.info(f"Testing {len(records)} patches with {workers} workers")

        outcomes: Dict[int, TestOutcome] = {}
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self.test, record): index
                       for index, record in enumerate(records)}
            try:
                for future in as_completed(futures):
                    outcome = future.result()
                    outcomes[futures[future]] = outcome
                    if on_result is not None:
                        on_result(outcome)
            except BaseException:
                # running trials finish and clean up their copies; queued ones never start
                for future in futures:
                    future.cancel()
                raise
        return [outcomes[i] for i in range(len(records))]
