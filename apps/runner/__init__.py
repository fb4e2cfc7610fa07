"""
Runner App - process entry point

Responsibilities:
- Building every component from settings (stores, schedulers, monitors)
- One AsyncIOScheduler for cycle, health, daily, status and sweep jobs
- Wiring health transitions to pause and resume collection
- RUN_ONCE mode and graceful shutdown on SIGINT/SIGTERM
"""
