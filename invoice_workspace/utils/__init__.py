"""Utility modules for common functionality"""

from .error_summary import error_sample, summarize_row_errors

__all__ = [
    'error_sample',
    'summarize_row_errors',
]
