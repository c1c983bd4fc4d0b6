#!/usr/bin/env python3
"""
Ephemeral working copies of the reference kernel source tree.

A WorkingCopy is a context manager: entering it creates a private,
uniquely named copy below a scratch directory; leaving it deletes the copy
whatever happened inside the block (success, exception, interrupt). The
reference tree itself is only ever read.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Optional

from kernel_patchset.utils.file_utils import directory_size, ensure_directory, files_size, free_space


class InsufficientSpace(OSError):
    """Not enough free disk space for a working copy."""


class WorkingCopy:
    """
    Disposable copy of a reference tree.
    """

    def __init__(self, reference_tree: Path, scratch_root: Path,
                 paths: Optional[Iterable[str]] = None, label: str = "copy",
                 check_space: bool = True):
        """
        Initialize a working copy handle.

        Args:
            reference_tree: Pristine source tree, never modified
            scratch_root: Directory the copy is created under
            paths: Relative paths to copy; None copies the whole tree
            label: Prefix for the copy directory name
            check_space: Refuse to copy when free space is too small
        """
        self.reference_tree = Path(reference_tree)
        self.scratch_root = Path(scratch_root)
        self.paths = list(paths) if paths is not None else None
        self.label = label
        self.check_space = check_space
        self.path: Optional[Path] = None
        self.logger = logging.getLogger(__name__)

    def __enter__(self) -> Path:
        if not self.reference_tree.is_dir():
            raise FileNotFoundError(f"Reference tree not found: {self.reference_tree}")
        ensure_directory(self.scratch_root)

        if self.check_space:
            self._check_space()

        self.path = Path(tempfile.mkdtemp(prefix=f"{self.label}-", dir=str(self.scratch_root)))
        try:
            if self.paths is None:
                self._copy_tree()
            else:
                self._copy_paths()
        except BaseException:
            self.release()
            raise
        self.logger.debug(f"Created working copy {self.path}")
        return self.path

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        self.release()
        return False

    def release(self) -> None:
        """Delete the copy; safe to call more than once."""
        if self.path is None:
            return
        path, self.path = self.path, None
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            self.logger.error(f"Could not fully remove working copy {path}")
        else:
            self.logger.debug(f"Removed working copy {path}")

    def _required_bytes(self) -> int:
        if self.paths is None:
            return directory_size(self.reference_tree)
        return files_size(self.reference_tree, self.paths)

    def _check_space(self) -> None:
        required = self._required_bytes()
        available = free_space(self.scratch_root)
        if required > available:
            raise InsufficientSpace(
                f"Working copy needs {required} bytes but only {available} are free "
                f"under {self.scratch_root}"
            )

    def _copy_tree(self) -> None:
        # mkdtemp already created the target directory
        shutil.copytree(self.reference_tree, self.path, symlinks=True, dirs_exist_ok=True)

    def _copy_paths(self) -> None:
        for rel in self.paths:
            source = self.reference_tree / rel
            if not source.is_file():
                continue
            target = self.path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target, follow_symlinks=False)
