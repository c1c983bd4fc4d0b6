"""
Patch ledger handling for kernel spec files.

This module provides parsing of Patch declarations and %patch application
directives, derived patch status, and locked, validated rewrites of the
spec file.
"""

from .patch_record import (
    DirectiveState, DisabledReason, LedgerEdit, ParsedLedger, PatchRecord, PatchStatus
)
from .ledger_parser import LedgerParser, parse, serialize
from .ledger_file import LedgerFile
from .ledger_mutator import EditPolicy, LedgerMutator, apply_edits, plan_edits

__all__ = [
    'DirectiveState', 'DisabledReason', 'LedgerEdit', 'ParsedLedger', 'PatchRecord',
    'PatchStatus', 'LedgerParser', 'parse', 'serialize', 'LedgerFile', 'EditPolicy',
    'LedgerMutator', 'apply_edits', 'plan_edits'
]
