"""
Queue Module.

Provides the Redis-backed analysis queue the observer pushes into.
"""

from .producer import AnalysisQueue

__all__ = ["AnalysisQueue"]
