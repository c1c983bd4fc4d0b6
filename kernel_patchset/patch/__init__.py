"""
Patch trials for the kernel patch set.

This module provides isolated per-patch compatibility testing and
cumulative validation of the enabled patch sequence.
"""

from .patch_apply import PatchApplyTool
from .working_copy import WorkingCopy
from .patch_tester import PatchTester
from .sequence_validator import SequenceValidator

__all__ = ['PatchApplyTool', 'WorkingCopy', 'PatchTester', 'SequenceValidator']
