from __future__ import annotations

from functools import partial

import anyio


async def to_thread(fn, *a, **kw):
    """Run a blocking store call on anyio's worker thread pool."""
    return await anyio.to_thread.run_sync(partial(fn, *a, **kw))
