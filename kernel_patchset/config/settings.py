#!/usr/bin/env python3
"""
Configuration for the kernel patch-set engine.

Values are resolved in order: dataclass defaults, an optional JSON config
file, KPATCHSET_* environment variables, then explicit overrides (CLI flags).
"""

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from kernel_patchset.errors import ConfigError

ENV_PREFIX = "KPATCHSET_"
DEFAULT_CONFIG_NAME = "patchset.json"
DEFAULT_SOURCE_URL = "https://cdn.kernel.org/pub/linux/kernel/v{major}.x/linux-{version}.tar.xz"


@dataclass
class PatchsetConfig:
    """Configuration for ledger, trial and fetch operations."""
    spec_file: str = "linux.spec"
    project_root: Optional[str] = None
    workdir: Optional[str] = None
    fuzz: int = 3
    sequence_fuzz: int = 0
    max_workers: int = 0  # 0 = auto-detect
    allow_fuzzy: bool = False
    sparse_copies: bool = True
    patch_timeout: int = 300
    lock_timeout: float = 0.0
    read_lock_timeout: float = 30.0
    source_url_template: str = DEFAULT_SOURCE_URL
    download_retries: int = 3
    download_timeout: int = 600
    results_file: Optional[str] = None
    log_to_file: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.fuzz < 0 or self.sequence_fuzz < 0:
            raise ConfigError("fuzz values must be non-negative")
        if self.max_workers < 0:
            raise ConfigError("max_workers must be >= 0")
        if self.patch_timeout <= 0 or self.download_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        if self.download_retries < 1:
            raise ConfigError("download_retries must be >= 1")
        if '{version}' not in self.source_url_template:
            raise ConfigError("source_url_template must contain {version}")

    @property
    def spec_path(self) -> Path:
        spec = Path(self.spec_file)
        if not spec.is_absolute() and self.project_root:
            spec = Path(self.project_root) / spec
        return spec.absolute()

    @property
    def root_path(self) -> Path:
        if self.project_root:
            return Path(self.project_root).absolute()
        return self.spec_path.parent

    @property
    def workdir_path(self) -> Path:
        if self.workdir:
            return Path(self.workdir).absolute()
        return self.root_path / "temp-kernel"

    @property
    def results_path(self) -> Path:
        if self.results_file:
            return Path(self.results_file).absolute()
        return self.workdir_path / "test-results.txt"

    @property
    def scratch_path(self) -> Path:
        return self.workdir_path / "scratch"

    @property
    def rejects_path(self) -> Path:
        return self.workdir_path / "rejects"


def _coerce(name: str, raw: Any, target_type: Any) -> Any:
    """Convert a raw config value (JSON or environment string) to the field type."""
    if raw is None:
        return None
    type_name = target_type if isinstance(target_type, str) else getattr(target_type, '__name__', str(target_type))
    try:
        if 'bool' in type_name:
            if isinstance(raw, bool):
                return raw
            value = str(raw).strip().lower()
            if value in ('1', 'true', 'yes', 'on'):
                return True
            if value in ('0', 'false', 'no', 'off'):
                return False
            raise ValueError(raw)
        if 'int' in type_name:
            return int(raw)
        if 'float' in type_name:
            return float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {raw!r}")
    return str(raw)


def _field_types() -> Dict[str, Any]:
    return {f.name: f.type for f in fields(PatchsetConfig)}


def load_config(config_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None,
                overrides: Optional[Dict[str, Any]] = None) -> PatchsetConfig:
    """
    Build a PatchsetConfig from file, environment and overrides.

    Args:
        config_file: JSON config path; when None, patchset.json next to the
            spec file (or in the current directory) is used if it exists
        environ: Environment mapping (defaults to os.environ)
        overrides: Explicit values, None entries are ignored

    Returns:
        Validated PatchsetConfig
    """
    logger = logging.getLogger(__name__)
    environ = os.environ if environ is None else environ
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    types = _field_types()
    values: Dict[str, Any] = {}

    path = Path(config_file) if config_file else None
    if path is None:
        spec_file = overrides.get('spec_file') or environ.get(f"{ENV_PREFIX}SPEC_FILE") or "linux.spec"
        root = (overrides.get('project_root') or environ.get(f"{ENV_PREFIX}PROJECT_ROOT")
                or str(Path(spec_file).parent))
        candidate = Path(root) / DEFAULT_CONFIG_NAME
        if candidate.exists():
            path = candidate
    elif not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    if path is not None:
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must hold a JSON object: {path}")
        for key, raw in data.items():
            if key not in types:
                raise ConfigError(f"Unknown configuration key in {path}: {key}")
            values[key] = _coerce(key, raw, types[key])
        logger.debug(f"Loaded configuration from {path}")

    for name, field_type in types.items():
        env_name = f"{ENV_PREFIX}{name.upper()}"
        if env_name in environ:
            values[name] = _coerce(name, environ[env_name], field_type)

    for key, raw in overrides.items():
        if key not in types:
            raise ConfigError(f"Unknown configuration key: {key}")
        values[key] = _coerce(key, raw, types[key])

    try:
        return PatchsetConfig(**values)
    except TypeError as e:
        raise ConfigError(str(e))


def with_overrides(config: PatchsetConfig, **overrides) -> PatchsetConfig:
    """Copy of config with the non-None overrides applied."""
    return replace(config, **{k: v for k, v in overrides.items() if v is not None})
