"""
Packages module.

Contains the package structure:
- shared: Shared types and enums
- observer: Registry observer feeding the analysis queue
"""
