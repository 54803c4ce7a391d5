"""
Async support for the provider.

The lifecycle methods are blocking (every Azure SDK poller is waited on),
so :class:`AsyncMixin` adds an ``a<method>`` coroutine for each of them that
runs the blocking call in a worker thread via :func:`asyncio.to_thread`.

Usage::

    provider = new_provider("/etc/garm/azure.toml", controller_id)
    instance = await asyncio.wait_for(provider.acreate_instance(bootstrap), 900)

A thread cannot be interrupted, so methods that accept a ``cancel``
keyword get a :class:`threading.Event` instead.  Cancelling the awaiting
task sets the event and waits for the method to unwind, so by the time
:class:`asyncio.CancelledError` reaches the caller the method has run its
own cleanup.  Methods without that keyword run to completion in the
background.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import threading
from typing import Any, Callable, Coroutine, TypeVar

T = TypeVar("T")

CANCEL_KEYWORD = "cancel"


def _takes_cancel(fn: Callable[..., Any]) -> bool:
    try:
        return CANCEL_KEYWORD in inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return False


async def _run_cancellable(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    cancel = kwargs.get(CANCEL_KEYWORD) or threading.Event()
    kwargs[CANCEL_KEYWORD] = cancel
    worker = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        cancel.set()
        await asyncio.wait([worker])
        # The method's own error (normally OperationCancelledError) is
        # superseded by the cancellation.
        if not worker.cancelled():
            worker.exception()
        raise


def async_wrap(
    fn: Callable[..., T],
) -> Callable[..., Coroutine[Any, Any, T]]:
    """Return an async version of *fn* that runs it in a thread.

    If *fn* takes a ``cancel`` keyword, cancelling the coroutine sets it.
    """
    if _takes_cancel(fn):

        @functools.wraps(fn)
        async def _cancellable(*args: Any, **kwargs: Any) -> T:
            return await _run_cancellable(fn, *args, **kwargs)

        return _cancellable

    @functools.wraps(fn)
    async def _wrapper(*args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    return _wrapper


class AsyncMixin:
    """Mixin that adds ``a<method>`` variants of the provider's methods.

    Only public methods defined on the subclass itself are wrapped, and an
    explicitly defined ``a<method>`` is never overwritten.
    """

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for name, attr in list(vars(cls).items()):
            if name.startswith("_") or not inspect.isfunction(attr):
                continue
            if inspect.iscoroutinefunction(attr) or hasattr(cls, f"a{name}"):
                continue
            setattr(cls, f"a{name}", async_wrap(attr))
