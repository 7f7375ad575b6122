"""
Utilities Module
================

Helper functions and utility classes.
"""

from taskapi.utils.helpers import utc_now

__all__ = ["utc_now"]
