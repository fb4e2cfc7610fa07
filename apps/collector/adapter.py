"""
Page Adapter boundary

The core never inspects page structure. Everything it needs from the
embedded portal page goes through an object implementing PageAdapter;
concrete adapters (browser automation, replay fixtures) live outside this
package and are selected with PAGE_ADAPTER="package.module:factory".
"""

import importlib
import logging
from typing import Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class PageAdapter(Protocol):
    async def is_ready(self) -> bool:
        """True once the listing page has loaded far enough to extract."""

    async def extract_items(self) -> list[dict[str, Any]]:
        """Listing rows as dicts with index, title, city, state, location."""

    async def click(self, index: int) -> bool:
        """Click the contact button of the row at `index`; True on success."""

    async def is_session_active(self) -> Optional[bool]:
        """Login indicator: True, False, or None when it cannot be determined."""


async def extract_leads(adapter: PageAdapter) -> list[dict[str, Any]]:
    """Leads from the optional `extract_leads` capability ([] when absent)."""
    fn = getattr(adapter, "extract_leads", None)
    if fn is None:
        return []
    return list(await fn() or [])


async def reload_page(adapter: PageAdapter) -> bool:
    """Ask the adapter to reload the page if it supports it."""
    fn = getattr(adapter, "reload", None)
    if fn is None:
        return False
    await fn()
    return True


def load_adapter(target: str, **kwargs: Any) -> PageAdapter:
    """Instantiate the adapter named by a "module:factory" path.

    Raises:
        ValueError: If the path is empty or malformed
        ImportError: If the module cannot be imported
        TypeError: If the factory does not produce a PageAdapter
    """
    if not target or ":" not in target:
        raise ValueError(f"PAGE_ADAPTER must look like 'package.module:factory', got {target!r}")

    module_name, _, attr = target.partition(":")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None:
        raise ImportError(f"{module_name} has no attribute {attr!r}")

    adapter = factory(**kwargs)
    if not isinstance(adapter, PageAdapter):
        raise TypeError(f"{target} did not return a PageAdapter")

    logger.info("Page adapter loaded", extra={"adapter": target})
    return adapter
