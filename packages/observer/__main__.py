"""
Observer entry point.

Usage:
    python -m packages.observer

Configuration comes from the environment (see core.config.Settings).
"""

import asyncio
import sys

from core.config import get_settings
from core.logging import configure_logging

from .supervisor import PipelineSupervisor


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    return asyncio.run(PipelineSupervisor(settings).run())


if __name__ == "__main__":
    sys.exit(main())
