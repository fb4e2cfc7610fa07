"""
Runner Module Entry Point

Allows execution via: python -m apps.runner

Delegates to the service for all execution modes (scheduled and RUN_ONCE).
"""

import asyncio

from apps.runner.service import main

if __name__ == "__main__":
    asyncio.run(main())
