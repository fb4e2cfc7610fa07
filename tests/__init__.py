"""
Tests Package - Unit Tests

Test structure:
- tests/unit/ - Fast, isolated unit tests (no Redis, no network)
- tests/conftest.py - Shared fixtures (fake clock, page adapter, channel, stores)

Async tests run under pytest-asyncio.
"""
