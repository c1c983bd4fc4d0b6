"""
Reference kernel source fetching.
"""

from .source_provider import ReferenceSourceProvider

__all__ = ['ReferenceSourceProvider']
