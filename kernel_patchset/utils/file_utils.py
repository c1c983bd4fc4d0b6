#!/usr/bin/env python3
"""
File utilities for the kernel patch-set engine.
Provides directory management, atomic writes and disk accounting.
"""

import hashlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Union

import psutil

PathLike = Union[str, Path]


def ensure_directory(path: PathLike) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to create

    Returns:
        Path object for the directory
    """
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def text_digest(text: str) -> str:
    """SHA-256 hex digest of text."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def atomic_write_text(file_path: PathLike, content: str) -> None:
    """
    Replace a file's content atomically.

    The new content is written to a temporary file in the same directory
    and moved over the target, so readers never see a partial file. The
    original file mode is preserved.
    """
    target = Path(file_path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, 'w', newline='') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if target.exists():
            shutil.copymode(target, tmp_name)
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def directory_size(path: PathLike) -> int:
    """Total size in bytes of regular files below a directory."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            if not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total


def files_size(base: PathLike, relative_paths: Iterable[str]) -> int:
    """Total size in bytes of the given files below base; absent files count as zero."""
    base = Path(base)
    total = 0
    for rel in relative_paths:
        candidate = base / rel
        if candidate.is_file():
            total += candidate.stat().st_size
    return total


def free_space(path: PathLike) -> int:
    """Free bytes on the filesystem holding path (or its nearest existing parent)."""
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return psutil.disk_usage(str(probe)).free


def is_within(path: PathLike, root: PathLike) -> bool:
    """True if path resolves to root or somewhere below it."""
    resolved = Path(path).resolve()
    root = Path(root).resolve()
    return resolved == root or root in resolved.parents
