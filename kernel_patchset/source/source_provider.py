#!/usr/bin/env python3
"""
Reference Kernel Source Provider

Downloads and unpacks the pristine kernel.org tarball matching the ledger's
version. Fetching is idempotent: an already unpacked tree is reused, and an
already downloaded tarball is not fetched again.
"""

import logging
import shutil
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Optional, Union

import requests

from kernel_patchset.config.settings import DEFAULT_SOURCE_URL
from kernel_patchset.errors import SourceFetchError
from kernel_patchset.utils.file_utils import ensure_directory

CHUNK_SIZE = 1024 * 1024
READY_MARKER = ".kpatchset-ready"


class ReferenceSourceProvider:
    """Fetches and caches reference kernel source trees."""

    def __init__(self, cache_dir: Union[str, Path], url_template: str = DEFAULT_SOURCE_URL,
                 retries: int = 3, timeout: int = 600, session: Optional[requests.Session] = None):
        """
        Initialize the source provider.

        Args:
            cache_dir: Directory holding tarballs and unpacked trees
            url_template: Tarball URL with {version} and optional {major}
            retries: Download attempts before giving up
            timeout: Per-request timeout in seconds
            session: requests session (for connection reuse and tests)
        """
        self.cache_dir = Path(cache_dir)
        self.url_template = url_template
        self.retries = retries
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)

    def tree_path(self, version: str) -> Path:
        return self.cache_dir / f"linux-{version}"

    def tarball_path(self, version: str) -> Path:
        return self.cache_dir / f"linux-{version}.tar.xz"

    def source_url(self, version: str) -> str:
        major = version.split('.', 1)[0]
        return self.url_template.format(version=version, major=major)

    def is_present(self, version: str) -> bool:
        return (self.tree_path(version) / READY_MARKER).exists()

    def fetch(self, version: str) -> Path:
        """
        Return a local pristine tree for version, fetching it if needed.

        Raises:
            SourceFetchError: download or extraction failed
        """
        tree = self.tree_path(version)
        if self.is_present(version):
            self.logger.info(f"Kernel source already present: {tree}")
            return tree

        ensure_directory(self.cache_dir)
        tarball = self.tarball_path(version)
        if not tarball.exists():
            self._download(self.source_url(version), tarball)
        self._extract(tarball, tree)
        return tree

    def _download(self, url: str, destination: Path) -> None:
        last_error = None
        for attempt in range(1, self.retries + 1):
            self.logger.info(f"Downloading {url} (attempt {attempt}/{self.retries})")
            partial = destination.with_name(destination.name + ".part")
            try:
                with self.session.get(url, stream=True, timeout=self.timeout) as response:
                    response.raise_for_status()
                    with open(partial, 'wb') as f:
                        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                            if chunk:
                                f.write(chunk)
                partial.replace(destination)
                self.logger.info(f"Downloaded kernel source to {destination}")
                return
            except requests.RequestException as e:
                last_error = e
                self.logger.warning(f"Download failed: {e}")
                if partial.exists():
                    partial.unlink()
                if attempt < self.retries:
                    time.sleep(min(2 ** attempt, 30))
            except BaseException:
                if partial.exists():
                    partial.unlink()
                raise
        raise SourceFetchError(f"Could not download {url}: {last_error}")

    def _extract(self, tarball: Path, tree: Path) -> None:
        """Unpack into a temporary directory, then move into place."""
        self.logger.info(f"Extracting {tarball.name}...")
        staging = Path(tempfile.mkdtemp(prefix="extract-", dir=str(self.cache_dir)))
        try:
            with tarfile.open(tarball, 'r:*') as archive:
                _safe_extract(archive, staging)
            entries = [p for p in staging.iterdir()]
            root = entries[0] if len(entries) == 1 and entries[0].is_dir() else staging
            if tree.exists():
                shutil.rmtree(tree)
            shutil.move(str(root), str(tree))
            (tree / READY_MARKER).touch()
        except (tarfile.TarError, OSError) as e:
            raise SourceFetchError(f"Could not extract {tarball}: {e}")
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        self.logger.info(f"Kernel source ready at {tree}")

    def clean(self, version: Optional[str] = None) -> None:
        """Remove a cached tree and tarball, or the whole cache."""
        if version is None:
            if self.cache_dir.exists():
                shutil.rmtree(self.cache_dir)
            return
        for path in (self.tree_path(version), self.tarball_path(version)):
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()


def _safe_extract(archive: tarfile.TarFile, destination: Path) -> None:
    destination = destination.resolve()
    for member in archive.getmembers():
        target = (destination / member.name).resolve()
        if destination != target and destination not in target.parents:
            raise SourceFetchError(f"Refusing to extract outside target: {member.name}")
    if hasattr(tarfile, 'data_filter'):
        archive.extractall(destination, filter='data')
    else:
        archive.extractall(destination)
