#!/usr/bin/env python3
"""
Tests for the patch tool adapter, working copies and the patch tester.
"""

import unittest
import tempfile
import shutil
import subprocess
import threading
import time
from pathlib import Path
from unittest.mock import patch, MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from kernel_patchset.ledger.patch_record import DirectiveState, PatchRecord, TrialResult
from kernel_patchset.patch.patch_apply import (
    ApplyResult, PatchApplyTool, collect_rejects, detect_conflicts, extract_target_files
)
from kernel_patchset.patch.patch_tester import PatchTester
from kernel_patchset.patch.working_copy import InsufficientSpace, WorkingCopy

HAS_PATCH = shutil.which('patch') is not None

SOURCE_LINES = [f"line {n}" for n in range(1, 61)]
TARGET = "drivers/foo.c"


def hunk_patch(index, replacement, removed=None, stale_context=False, target=TARGET):
    """Unified diff replacing SOURCE_LINES[index] with replacement."""
    start = max(0, index - 3)
    before = list(SOURCE_LINES[start:index])
    after = list(SOURCE_LINES[index + 1:index + 4])
    if stale_context:
        before[0] += " old"
        after[-1] += " old"
    removed = SOURCE_LINES[index] if removed is None else removed
    body = [f" {line}" for line in before] + [f"-{removed}", f"+{replacement}"]
    body += [f" {line}" for line in after]
    count = len(before) + 1 + len(after)
    return (f"--- a/{target}\n+++ b/{target}\n"
            f"@@ -{start + 1},{count} +{start + 1},{count} @@\n" + "\n".join(body) + "\n")


def make_record(number, filename):
    return PatchRecord(number, filename, DirectiveState.COMMENTED, DirectiveState.COMMENTED)


class PatchTestCase(unittest.TestCase):
    """Shared fixture: a reference tree, a project root and a scratch directory."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = tempfile.mkdtemp()
        self.project_root = Path(self.test_dir) / "project"
        self.reference = Path(self.test_dir) / "linux-6.1.10"
        self.scratch = Path(self.test_dir) / "scratch"

        (self.project_root / "patches").mkdir(parents=True)
        (self.reference / "drivers").mkdir(parents=True)
        (self.reference / "Makefile").write_text("all:\n")
        self.source_file = self.reference / TARGET
        self.source_file.write_text("\n".join(SOURCE_LINES) + "\n")

    def tearDown(self):
        """Clean up test environment."""
        shutil.rmtree(self.test_dir)

    def write_patch(self, name, content):
        path = self.project_root / "patches" / name
        path.write_text(content)
        return f"patches/{name}"


class TestPatchApplyTool(PatchTestCase):
    """Test cases for PatchApplyTool class."""

    def test_build_command(self):
        """Test patch command construction."""
        tool = PatchApplyTool()
        cmd = tool.build_command(Path("x.patch"), fuzz=0, dry_run=True)
        self.assertEqual(cmd[:3], ["patch", "-p1", "--fuzz=0"])
        self.assertIn("--dry-run", cmd)
        self.assertIn("--batch", cmd)
        self.assertEqual(cmd[-1], str(Path("x.patch").absolute()))
        self.assertNotIn("--dry-run", tool.build_command(Path("x.patch"), fuzz=3))

    @patch('subprocess.run')
    def test_apply_success(self, mock_run):
        """Test successful invocation."""
        mock_result = MagicMock()
        mock_result.returncode = 0
        mock_result.stdout = "patching file drivers/foo.c\n"
        mock_result.stderr = ""
        mock_run.return_value = mock_result

        result = PatchApplyTool().apply(self.reference, Path("x.patch"), fuzz=0, dry_run=True)

        self.assertTrue(result.success)
        self.assertEqual(result.conflicts, [])
        self.assertEqual(mock_run.call_args.kwargs['cwd'], str(self.reference))

    @patch('subprocess.run')
    def test_apply_conflict(self, mock_run):
        """Test conflict detection from patch output."""
        mock_result = MagicMock()
        mock_result.returncode = 1
        mock_result.stdout = "patching file drivers/foo.c\nHunk #1 FAILED at 8.\n"
        mock_result.stderr = ""
        mock_run.return_value = mock_result

        result = PatchApplyTool().apply(self.reference, Path("x.patch"), fuzz=3)

        self.assertFalse(result.success)
        self.assertEqual(result.conflicts, ["Hunk #1 FAILED at 8."])

    @patch('subprocess.run')
    def test_apply_timeout(self, mock_run):
        """Test that a hung patch process is reported, not raised."""
        mock_run.side_effect = subprocess.TimeoutExpired(["patch"], 5)

        result = PatchApplyTool(timeout=5).apply(self.reference, Path("x.patch"), fuzz=0)

        self.assertFalse(result.success)
        self.assertTrue(result.timed_out)
        self.assertIn("timed out", result.stderr)

    def test_detect_conflicts(self):
        """Test conflict line extraction."""
        output = "patching file a.c\nHunk #2 FAILED at 10.\n1 out of 2 hunks FAILED -- saving rejects\n"
        self.assertEqual(len(detect_conflicts(output)), 2)
        self.assertEqual(detect_conflicts("patching file a.c\n"), [])

    def test_extract_target_files(self):
        """Test target file extraction from unified and git diffs."""
        patch_file = Path(self.test_dir) / "multi.patch"
        patch_file.write_text(
            "diff --git a/kernel/cgroup.c b/kernel/cgroup.c\n"
            "--- a/kernel/cgroup.c\n"
            "+++ b/kernel/cgroup.c\n"
            "@@ -1 +1 @@\n-a\n+b\n"
            "diff --git a/old/name.c b/new/name.c\n"
            "similarity index 90%\n"
            "rename from old/name.c\n"
            "rename to new/name.c\n"
            "--- /dev/null\n"
            "+++ b/include/new.h\t2024-01-01 00:00:00\n"
            "--- a/../etc/passwd\n"
        )
        self.assertEqual(extract_target_files(patch_file),
                         ["kernel/cgroup.c", "old/name.c", "new/name.c", "include/new.h"])

    def test_collect_rejects(self):
        """Test reading reject files."""
        (self.reference / "drivers" / "foo.c.rej").write_text("@@ -1 +1 @@\n")
        rejects = collect_rejects(self.reference)
        self.assertEqual([r.path for r in rejects], ["drivers/foo.c.rej"])
        self.assertEqual(rejects[0].content, "@@ -1 +1 @@\n")


class TestWorkingCopy(PatchTestCase):
    """Test cases for WorkingCopy class."""

    def test_full_copy_and_cleanup(self):
        """Test that a full copy is made and removed."""
        with WorkingCopy(self.reference, self.scratch) as path:
            self.assertTrue((path / TARGET).exists())
            self.assertTrue((path / "Makefile").exists())
            self.assertEqual(path.parent, self.scratch)
        self.assertFalse(path.exists())

    def test_sparse_copy(self):
        """Test copying only selected files."""
        with WorkingCopy(self.reference, self.scratch, paths=[TARGET, "missing.c"]) as path:
            self.assertTrue((path / TARGET).exists())
            self.assertFalse((path / "Makefile").exists())
            self.assertFalse((path / "missing.c").exists())

    def test_cleanup_on_exception(self):
        """The copy is removed when the block raises."""
        copy = WorkingCopy(self.reference, self.scratch)
        with self.assertRaises(RuntimeError):
            with copy as path:
                (path / TARGET).write_text("modified\n")
                raise RuntimeError("boom")
        self.assertFalse(path.exists())
        self.assertEqual(list(self.scratch.iterdir()), [])
        self.assertEqual(self.source_file.read_text(), "\n".join(SOURCE_LINES) + "\n")

    def test_unique_copies(self):
        """Nested copies never share a directory."""
        with WorkingCopy(self.reference, self.scratch) as first:
            with WorkingCopy(self.reference, self.scratch) as second:
                self.assertNotEqual(first, second)

    def test_missing_reference(self):
        """Test a reference tree that does not exist."""
        with self.assertRaises(FileNotFoundError):
            with WorkingCopy(Path(self.test_dir) / "nope", self.scratch):
                pass

    @patch('kernel_patchset.patch.working_copy.free_space')
    def test_insufficient_space(self, mock_free):
        """Test the free-space check."""
        mock_free.return_value = 0
        with self.assertRaises(InsufficientSpace):
            with WorkingCopy(self.reference, self.scratch):
                pass
        self.assertEqual(list(self.scratch.iterdir()), [])


class MarkingApplyTool(PatchApplyTool):
    """Apply tool that records which files each trial can see."""

    def __init__(self):
        super().__init__()
        self.seen = []
        self.lock = threading.Lock()

    def apply(self, workdir, patch_file, fuzz, dry_run=False):
        workdir = Path(workdir)
        (workdir / f"marker-{Path(patch_file).stem}").write_text("x")
        time.sleep(0.05)
        markers = sorted(p.name for p in workdir.glob("marker-*"))
        with self.lock:
            self.seen.append(markers)
        return ApplyResult(success=True, returncode=0, fuzz=fuzz, dry_run=dry_run)


class TestPatchTesterMocked(PatchTestCase):
    """Test cases for PatchTester with a stubbed patch tool."""

    def test_missing_patch_file(self):
        """A missing patch file is reported, not raised."""
        tester = PatchTester(self.project_root, self.reference, self.scratch)
        outcome = tester.test(make_record(5, "patches/nope.patch"))
        self.assertEqual(outcome.result, TrialResult.MISSING)

    def test_fuzzy_classification(self):
        """Strict failure followed by tolerant success is fuzzy."""
        filename = self.write_patch("0005.patch", hunk_patch(10, "changed"))
        tool = MagicMock(strip=1)
        tool.apply.side_effect = [
            ApplyResult(success=False, returncode=1, fuzz=0, dry_run=True),
            ApplyResult(success=True, returncode=0, fuzz=3, dry_run=True),
        ]
        tester = PatchTester(self.project_root, self.reference, self.scratch, apply_tool=tool)

        outcome = tester.test(make_record(5, filename))

        self.assertEqual(outcome.result, TrialResult.FUZZY)
        self.assertEqual([c.kwargs['fuzz'] for c in tool.apply.call_args_list], [0, 3])

    def test_unexpected_error(self):
        """An exception inside a trial becomes an error outcome."""
        filename = self.write_patch("0005.patch", hunk_patch(10, "changed"))
        tool = MagicMock(strip=1)
        tool.apply.side_effect = OSError("patch binary vanished")
        tester = PatchTester(self.project_root, self.reference, self.scratch, apply_tool=tool)

        outcome = tester.test(make_record(5, filename))

        self.assertEqual(outcome.result, TrialResult.ERROR)
        self.assertIn("patch binary vanished", outcome.message)
        self.assertEqual(list(self.scratch.iterdir()), [])

    @patch('kernel_patchset.patch.working_copy.free_space')
    def test_insufficient_space(self, mock_free):
        """No room for a copy is an error outcome."""
        mock_free.return_value = 0
        filename = self.write_patch("0005.patch", hunk_patch(10, "changed"))
        tester = PatchTester(self.project_root, self.reference, self.scratch)
        self.assertEqual(tester.test(make_record(5, filename)).result, TrialResult.ERROR)

    def test_isolation(self):
        """Concurrent trials never see each other's working copies."""
        tool = MarkingApplyTool()
        records = [make_record(n, self.write_patch(f"{n:04d}.patch", hunk_patch(n, f"p{n}")))
                   for n in range(3, 11)]
        tester = PatchTester(self.project_root, self.reference, self.scratch,
                             apply_tool=tool, sparse=False)

        outcomes = tester.test_many(records, max_workers=4)

        self.assertTrue(all(o.result == TrialResult.CLEAN for o in outcomes))
        self.assertEqual(len(tool.seen), len(records))
        for markers in tool.seen:
            self.assertEqual(len(markers), 1)
        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_many_keeps_order(self):
        """Outcomes come back in input order and each is reported once."""
        records = [make_record(n, f"patches/missing-{n}.patch") for n in (9, 2, 7)]
        tester = PatchTester(self.project_root, self.reference, self.scratch)
        reported = []

        outcomes = tester.test_many(records, max_workers=2, on_result=reported.append)

        self.assertEqual([o.number for o in outcomes], [9, 2, 7])
        self.assertEqual(sorted(o.number for o in reported), [2, 7, 9])
        self.assertEqual(tester.test_many([]), [])


@unittest.skipUnless(HAS_PATCH, "patch binary not available")
class TestPatchTester(PatchTestCase):
    """Test cases for PatchTester class with the real patch tool."""

    def setUp(self):
        super().setUp()
        self.tester = PatchTester(self.project_root, self.reference, self.scratch, fuzz=3)

    def test_clean(self):
        """Test a patch that applies exactly."""
        filename = self.write_patch("clean.patch", hunk_patch(10, "line 11 changed"))
        self.assertEqual(self.tester.test(make_record(1, filename)).result, TrialResult.CLEAN)

    def test_fuzzy(self):
        """Test a patch whose outer context drifted."""
        filename = self.write_patch("fuzzy.patch", hunk_patch(10, "line 11 changed", stale_context=True))
        self.assertEqual(self.tester.test(make_record(2, filename)).result, TrialResult.FUZZY)

    def test_failed_collects_rejects(self):
        """Test a patch that cannot apply, with its reject fragments."""
        filename = self.write_patch("failed.patch", hunk_patch(10, "new", removed="line eleven"))
        outcome = self.tester.test(make_record(3, filename))

        self.assertEqual(outcome.result, TrialResult.FAILED)
        self.assertEqual([r.path for r in outcome.reject_artifacts], [f"{TARGET}.rej"])
        self.assertIn("line eleven", outcome.reject_artifacts[0].content)

    def test_reference_tree_untouched(self):
        """Trials never modify the reference tree and leave no copies behind."""
        records = [
            make_record(1, self.write_patch("a.patch", hunk_patch(10, "A"))),
            make_record(2, self.write_patch("b.patch", hunk_patch(10, "B"))),
            make_record(3, self.write_patch("c.patch", hunk_patch(10, "C", removed="nope"))),
        ]
        outcomes = self.tester.test_many(records, max_workers=3)

        self.assertEqual([o.result for o in outcomes],
                         [TrialResult.CLEAN, TrialResult.CLEAN, TrialResult.FAILED])
        self.assertEqual(self.source_file.read_text(), "\n".join(SOURCE_LINES) + "\n")
        self.assertEqual(list(self.reference.rglob("*.rej")), [])
        self.assertEqual(list(self.scratch.iterdir()), [])


if __name__ == '__main__':
    unittest.main()
