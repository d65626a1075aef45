"""
Package Observer Core Library.

Configuration and structured logging shared by the observer components.

Usage:
    # Config
    from core.config import get_settings, Settings

    # Logging
    from core.logging import get_logger, configure_logging
"""

__version__ = "1.0.0"
