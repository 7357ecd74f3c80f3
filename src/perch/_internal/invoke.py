"""Uniform calling of sync and async callables.

Route handlers, status handlers, error handlers and hooks can all be
``def`` or ``async def``. This module keeps the sync/async check in
exactly one place.

Usage::

    from perch._internal.invoke import invoke

    result = await invoke(handler, ctx)
"""

import inspect
from typing import Any


async def invoke(handler: Any, *args: Any, **kwargs: Any) -> Any:
    """Call a handler and await the result if it's awaitable.

    Works with both sync and async callables::

        # sync: returns immediately
        def show(ctx):
            return {"id": ctx.params["id"]}

        # async: the coroutine is awaited here
        async def show(ctx):
            return await load(ctx.params["id"])
    """
    result = handler(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result
