"""
Status reports and the append-only test results artifact.
"""

from .status_reporter import StatusReporter
from .results_store import ResultsStore

__all__ = ['StatusReporter', 'ResultsStore']
