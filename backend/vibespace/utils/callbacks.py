# backend/vibespace/utils/callbacks.py
import inspect
from typing import Any


async def maybe_await(result: Any) -> Any:
    """Await ``result`` if a callback handed back a coroutine; sync callbacks pass through."""
    if inspect.isawaitable(result):
        return await result
    return result
