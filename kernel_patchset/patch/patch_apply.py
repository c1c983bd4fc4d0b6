#!/usr/bin/env python3
"""
Adapter for the external patch-apply tool.

Runs GNU ``patch`` inside an explicit working directory with a given fuzz
tolerance and reports success, conflict lines and reject fragments.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from kernel_patchset.ledger.patch_record import RejectFragment

CONFLICT_INDICATORS = [
    'FAILED',
    'rejected',
    'conflict',
    'malformed patch',
    "can't find file",
    'Reversed (or previously applied) patch detected',
]


@dataclass
class ApplyResult:
    """Result of one invocation of the patch tool."""
    success: bool
    returncode: Optional[int]
    fuzz: int
    dry_run: bool
    stdout: str = ""
    stderr: str = ""
    conflicts: List[str] = field(default_factory=list)
    timed_out: bool = False


class PatchApplyTool:
    """
    Thin wrapper over ``patch -p1``.
    """

    def __init__(self, patch_binary: str = "patch", strip: int = 1, timeout: int = 300):
        """
        Initialize the patch tool adapter.

        Args:
            patch_binary: Name or path of the patch executable
            strip: Leading path components to strip (-pN)
            timeout: Seconds before an invocation is killed
        """
        self.patch_binary = patch_binary
        self.strip = strip
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def build_command(self, patch_file: Path, fuzz: int, dry_run: bool = False) -> List[str]:
        """Build the patch command with appropriate options."""
        cmd = [self.patch_binary, f'-p{self.strip}', f'--fuzz={fuzz}',
               '--forward', '--batch', '--no-backup-if-mismatch']
        if dry_run:
            cmd.append('--dry-run')
        cmd.extend(['-i', str(Path(patch_file).absolute())])
        return cmd

    def apply(self, workdir: Path, patch_file: Path, fuzz: int, dry_run: bool = False) -> ApplyResult:
        """
        Apply a patch in workdir.

        Args:
            workdir: Directory the patch is applied in
            patch_file: Patch to apply
            fuzz: Maximum fuzz factor
            dry_run: Only check whether the patch applies

        Returns:
            ApplyResult
        """
        cmd = self.build_command(patch_file, fuzz, dry_run)
        self.logger.debug(f"Running {' '.join(cmd)} in {workdir}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(workdir),
                capture_output=True,
                text=True,
                errors='replace',
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            return ApplyResult(
                success=False,
                returncode=None,
                fuzz=fuzz,
                dry_run=dry_run,
                stdout=_decode(e.stdout),
                stderr=f"patch timed out after {self.timeout}s",
                timed_out=True
            )

        output = f"{result.stdout}\n{result.stderr}"
        return ApplyResult(
            success=result.returncode == 0,
            returncode=result.returncode,
            fuzz=fuzz,
            dry_run=dry_run,
            stdout=result.stdout,
            stderr=result.stderr,
            conflicts=[] if result.returncode == 0 else detect_conflicts(output)
        )


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return data


def detect_conflicts(output: str) -> List[str]:
    """Conflict lines from patch command output."""
    conflicts = []
    for line in output.split('\n'):
        lowered = line.lower()
        for indicator in CONFLICT_INDICATORS:
            if indicator.lower() in lowered:
                conflicts.append(line.strip())
                break
    return conflicts


def collect_rejects(workdir: Path) -> List[RejectFragment]:
    """Read every *.rej file below workdir."""
    fragments = []
    for reject in sorted(Path(workdir).rglob('*.rej')):
        if not reject.is_file():
            continue
        fragments.append(RejectFragment(
            path=str(reject.relative_to(workdir)),
            content=reject.read_text(errors='replace')
        ))
    return fragments


def extract_target_files(patch_file: Path, strip: int = 1) -> List[str]:
    """
    Files a unified or git diff touches, relative to the tree root.

    Both old and new names are included so renames and copies find their
    source file. Paths that would escape the tree are dropped.
    """
    targets: List[str] = []

    def add(raw: str, components: int = strip):
        raw = raw.split('\t')[0].strip()
        if not raw or raw == '/dev/null':
            return
        parts = [p for p in raw.split('/')[components:] if p not in ('', '.')]
        if not parts or '..' in parts:
            return
        rel = '/'.join(parts)
        if rel not in targets:
            targets.append(rel)

    with open(patch_file, 'r', errors='replace') as f:
        for line in f:
            line = line.rstrip('\n')
            if line.startswith('diff --git '):
                parts = line.split()
                if len(parts) >= 4:
                    add(parts[2])
                    add(parts[3])
            elif line.startswith('--- ') or line.startswith('+++ '):
                add(line[4:])
            elif line.startswith('rename from ') or line.startswith('copy from '):
                # git metadata paths carry no a/ b/ prefix
                add(line.split(' ', 2)[2], components=0)
    return targets
