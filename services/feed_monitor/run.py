#!/usr/bin/env python3
"""
Feed Monitor Service Entry Point

This script starts the feed monitor and commit processor.
"""

import asyncio
import logging

from config.settings import settings
from services.feed_monitor.main import main as run_service


def main():
    """Start the Feed Monitor service."""
    logging.basicConfig(
        level=getattr(logging, settings.logging.level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(run_service())


if __name__ == "__main__":
    main()
