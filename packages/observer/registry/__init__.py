"""
Registry Module.

Provides async clients for the CouchDB-backed sources the observer reads:
- The registry change log (_changes feed)
- The analysis result store (staleness view)
"""

# Use lazy imports to avoid requiring aiohttp at import time
def __getattr__(name):
    if name == "RegistryChangeLog":
        from .client import RegistryChangeLog
        return RegistryChangeLog
    elif name == "AnalysisResultStore":
        from .results import AnalysisResultStore
        return AnalysisResultStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    "RegistryChangeLog",
    "AnalysisResultStore",
]
