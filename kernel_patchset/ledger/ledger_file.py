#!/usr/bin/env python3
"""
Locked access to the spec file backing the patch ledger.

Every read and every read-modify-write of the ledger happens while holding
an exclusive lock on a sibling ``<spec>.lock`` file, so a rewrite is never
observed half-done and two writers can never interleave.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Tuple, Union

from filelock import FileLock, Timeout

from kernel_patchset.errors import ConcurrentMutationConflict, LedgerMalformed
from kernel_patchset.utils.file_utils import atomic_write_text, text_digest


class LedgerFile:
    """
    Spec file plus its lock.
    """

    def __init__(self, spec_path: Union[str, Path], lock_timeout: float = 0.0,
                 read_lock_timeout: float = 30.0):
        """
        Initialize the ledger file handle.

        Args:
            spec_path: Path to the spec file
            lock_timeout: Seconds a writer waits for the lock (0 = fail fast)
            read_lock_timeout: Seconds a reader waits for the lock
        """
        self.spec_path = Path(spec_path)
        self.lock_path = self.spec_path.with_name(self.spec_path.name + ".lock")
        self.lock_timeout = lock_timeout
        self.read_lock_timeout = read_lock_timeout
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def locked(self, timeout: float = None) -> Iterator[None]:
        """Hold the ledger lock; raise ConcurrentMutationConflict if it is taken."""
        timeout = self.lock_timeout if timeout is None else timeout
        lock = FileLock(str(self.lock_path), timeout=timeout)
        try:
            lock.acquire()
        except Timeout:
            raise ConcurrentMutationConflict(
                f"Ledger {self.spec_path} is locked by another writer; "
                f"re-read the ledger and retry"
            )
        try:
            yield
        finally:
            lock.release()

    def read_unlocked(self) -> str:
        """Read the ledger text; the caller must hold the lock."""
        if not self.spec_path.exists():
            raise LedgerMalformed(f"Spec file not found: {self.spec_path}")
        with open(self.spec_path, 'r', newline='') as f:
            return f.read()

    def read(self) -> Tuple[str, str]:
        """
        Read the ledger under the lock.

        Returns:
            (text, sha256 digest of text)
        """
        with self.locked(timeout=self.read_lock_timeout):
            text = self.read_unlocked()
        return text, text_digest(text)

    def write_unlocked(self, text: str) -> None:
        """Atomically replace the ledger text; the caller must hold the lock."""
        atomic_write_text(self.spec_path, text)
        self.logger.debug(f"Rewrote ledger {self.spec_path}")
