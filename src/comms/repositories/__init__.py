"""Repository layer for the communication core.

In-memory stores return plain values; SQLAlchemy repositories return
coroutines. :func:`resolve` lets callers treat both the same way.
"""

from __future__ import annotations

import inspect
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def resolve(value: T | Awaitable[T]) -> T:
    """Await a value if it is awaitable, otherwise return it directly.

        template = await resolve(store.get(template_id))
    """
    if inspect.isawaitable(value):
        return await value  # type: ignore[return-value]
    return value  # type: ignore[return-value]
