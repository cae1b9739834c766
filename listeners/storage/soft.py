from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, TypeVar, Union

from listeners.logging import get_logger
from listeners.storage.kv import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


async def try_store_op(
    op: Union[Callable[[], Awaitable[T]], Awaitable[T]],
    fallback: T,
    *,
    event: str = "store_op_failed",
    **log_fields: Any,
) -> T:
    """Run a store call and return ``fallback`` if the store is unavailable.

    Used wherever availability wins over strictness: rate-limit counting,
    blacklist lookups and refresh-pointer writes. The failure is logged at
    warning level under ``event`` together with ``log_fields``.
    """

    awaitable = op() if callable(op) and not inspect.isawaitable(op) else op
    try:
        return await awaitable
    except StoreUnavailableError as exc:
        logger.warning(event, operation=exc.operation, error=str(exc.error), **log_fields)
        return fallback


__all__ = ["try_store_op"]
