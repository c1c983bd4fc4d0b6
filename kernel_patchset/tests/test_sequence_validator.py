#!/usr/bin/env python3
"""
Tests for cumulative sequence validation.
"""

import unittest
from pathlib import Path
from unittest.mock import MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from kernel_patchset.errors import SequenceBreak
from kernel_patchset.ledger.ledger_parser import parse
from kernel_patchset.ledger.patch_record import TrialResult
from kernel_patchset.patch.patch_apply import ApplyResult
from kernel_patchset.patch.patch_tester import PatchTester
from kernel_patchset.patch.sequence_validator import SequenceValidator
from kernel_patchset.tests.test_patch_tester import HAS_PATCH, SOURCE_LINES, TARGET, PatchTestCase, hunk_patch


def ledger_text(numbers, order=None):
    """Spec text declaring and applying the given patches."""
    lines = ["Name: kernel", "Version: 6.1.10", ""]
    lines += [f"Patch{n}: patches/{n:04d}.patch" for n in numbers]
    lines += ["", "%prep", "%setup -q"]
    lines += [f"%patch {n} -p1" for n in (order or numbers)]
    return "\n".join(lines) + "\n"


class TestSequenceValidatorMocked(PatchTestCase):
    """Test cases for SequenceValidator with a stubbed patch tool."""

    def test_applies_in_directive_order(self):
        """Patches are applied in application-directive order, not number order."""
        for n in (1, 2, 3):
            self.write_patch(f"{n:04d}.patch", hunk_patch(n * 10, f"p{n}"))
        ledger = parse(ledger_text([1, 2, 3], order=[3, 1, 2]))
        tool = MagicMock()
        tool.apply.return_value = ApplyResult(success=True, returncode=0, fuzz=0, dry_run=False)
        validator = SequenceValidator(self.project_root, self.reference, self.scratch, apply_tool=tool)

        report = validator.validate_sequence(ledger.enabled())

        self.assertTrue(report.all_succeeded)
        self.assertEqual(report.applied, [3, 1, 2])
        applied_files = [Path(c.args[1]).name for c in tool.apply.call_args_list]
        self.assertEqual(applied_files, ["0003.patch", "0001.patch", "0002.patch"])
        self.assertTrue(all(c.kwargs['fuzz'] == 0 and not c.kwargs['dry_run']
                            for c in tool.apply.call_args_list))
        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_empty_sequence(self):
        """Nothing enabled is trivially valid."""
        report = SequenceValidator(self.project_root, self.reference, self.scratch).validate_sequence([])
        self.assertTrue(report.all_succeeded)
        self.assertEqual(report.total, 0)
        report.raise_for_failure()

    def test_missing_patch_breaks_sequence(self):
        """A missing patch file stops the sequence."""
        self.write_patch("0001.patch", hunk_patch(10, "p1"))
        ledger = parse(ledger_text([1, 2]))
        tool = MagicMock()
        tool.apply.return_value = ApplyResult(success=True, returncode=0, fuzz=0, dry_run=False)
        validator = SequenceValidator(self.project_root, self.reference, self.scratch, apply_tool=tool)

        report = validator.validate_sequence(ledger.enabled())

        self.assertFalse(report.all_succeeded)
        self.assertEqual(report.applied_count, 1)
        self.assertEqual(report.first_failure.number, 2)
        self.assertIn("not found", report.first_failure.message)


@unittest.skipUnless(HAS_PATCH, "patch binary not available")
class TestSequenceValidator(PatchTestCase):
    """Test cases for SequenceValidator class with the real patch tool."""

    def setUp(self):
        super().setUp()
        self.reject_dir = self.project_root / "temp-kernel" / "rejects"
        self.validator = SequenceValidator(self.project_root, self.reference, self.scratch,
                                           reject_dir=self.reject_dir)

    def test_all_apply(self):
        """Independent patches apply cumulatively."""
        for n in (1, 2, 3):
            self.write_patch(f"{n:04d}.patch", hunk_patch(n * 10, f"p{n}"))
        report = self.validator.validate_sequence(parse(ledger_text([1, 2, 3])).enabled())
        self.assertTrue(report.all_succeeded)
        self.assertEqual(report.applied_count, 3)
        self.assertIsNone(report.first_failure)

    def test_order_sensitivity(self):
        """Two individually clean patches that conflict in sequence."""
        self.write_patch("0001.patch", hunk_patch(10, "line 11 from A"))
        self.write_patch("0002.patch", hunk_patch(10, "line 11 from B"))
        ledger = parse(ledger_text([1, 2]))

        tester = PatchTester(self.project_root, self.reference, self.scratch)
        outcomes = tester.test_many(ledger.records, max_workers=2)
        self.assertEqual([o.result for o in outcomes], [TrialResult.CLEAN, TrialResult.CLEAN])

        report = self.validator.validate_sequence(ledger.enabled())
        self.assertFalse(report.all_succeeded)
        self.assertEqual(report.applied_count, 1)
        self.assertEqual(report.first_failure.number, 2)
        self.assertTrue(report.first_failure.reject_artifacts)
        with self.assertRaises(SequenceBreak) as ctx:
            report.raise_for_failure()
        self.assertEqual(ctx.exception.number, 2)
        self.assertEqual(ctx.exception.filename, "patches/0002.patch")

    def test_stops_at_first_failure(self):
        """Five enabled patches, the third fails: two applied, ledger unmodified."""
        for n in (1, 2, 4, 5):
            self.write_patch(f"{n:04d}.patch", hunk_patch(n * 10, f"p{n}"))
        self.write_patch("0003.patch", hunk_patch(30, "p3", removed="not in the tree"))
        spec = self.project_root / "linux.spec"
        text = ledger_text([1, 2, 3, 4, 5])
        spec.write_text(text)

        report = self.validator.validate_sequence(parse(spec.read_text()).enabled())

        self.assertEqual(report.applied_count, 2)
        self.assertEqual(report.applied, [1, 2])
        self.assertEqual(report.first_failure.number, 3)
        self.assertEqual(report.total, 5)
        self.assertEqual(spec.read_text(), text)

        saved = self.reject_dir / "patch-3" / f"{TARGET}.rej"
        self.assertTrue(saved.exists())
        self.assertEqual(report.first_failure.reject_dir, str(self.reject_dir / "patch-3"))
        self.assertEqual(self.source_file.read_text(), "\n".join(SOURCE_LINES) + "\n")
        self.assertEqual(list(self.scratch.iterdir()), [])


if __name__ == '__main__':
    unittest.main()
