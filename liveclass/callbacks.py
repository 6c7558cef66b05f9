from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[..., Awaitable[None] | None]


async def invoke(callback: Optional[Callback], *args: Any, label: str = "callback") -> None:
    """Run an observer callback, awaiting it if needed; failures are logged, never raised."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("%s failed", label)
