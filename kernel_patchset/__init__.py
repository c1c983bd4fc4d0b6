"""
Patch compatibility and build orchestration for kernel RPM spec files.

The spec file is the single source of truth for which patches are enabled.
This package parses it, tests disabled patches against a pristine kernel
tree, validates the enabled set cumulatively and rewrites patch state.
"""

__version__ = "1.0.0"
